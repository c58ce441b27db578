import numpy as np
from dataclasses import dataclass
import nraec_toolbox.n_base as base
from nraec_toolbox.n_classes import SignalBundle, CascadeOutputs


@dataclass
class Metric:
    """Class for storing objective speech enhancement metrics"""
    before: float = 0.          # metric value before enhancement
    after: float = 0.           # metric value after enhancement
    diff: float = 0.            # difference between before and after enhancement

    def __post_init__(self):
        self.diff = self.after - self.before


@dataclass
class Metrics:
    """Fullband metrics of a set of aligned signals."""
    snr: float = 0.     # [dB] signal-to-noise ratio
    ser: float = 0.     # [dB] signal-to-echo ratio


@dataclass
class EnhancementMeasures:
    """Class for storing the metrics of a cascade"""
    snr: Metric = None  # signal-to-(near-end)noise ratio
    ser: Metric = None  # signal-to-echo ratio
    sd: float = 0.      # [dB] speech distortion
    nSamples: int = 0   # number of samples used to compute the metrics


@dataclass
class AlignedSignals:
    """Reference-microphone signals, time-aligned and restricted to the
    desired-speech-active samples."""
    m: np.ndarray = None
    s: np.ndarray = None
    n: np.ndarray = None
    e: np.ndarray = None    # echo (`es + en`)


def snr(s, n):
    """Fullband signal-to-noise ratio [dB]."""
    return 10 * np.log10(np.sum(s ** 2) / np.sum(n ** 2))


def sd(s, sp):
    """Fullband speech distortion [dB] of the processed speech `sp` with
    respect to the speech `s`."""
    return 10 * np.log10(np.mean(s ** 2) / np.mean(sp ** 2))


def compute_metrics(x: AlignedSignals) -> Metrics:
    """Signal-to-noise and signal-to-echo ratios of aligned signals."""
    return Metrics(snr=snr(x.s, x.n), ser=snr(x.s, x.e))


def align_proc_unproc(
        proc: SignalBundle,
        unproc: SignalBundle,
        p: base.NRAECparameters
    ) -> tuple[AlignedSignals, AlignedSignals]:
    """
    Aligns processed and unprocessed reference-microphone signals
    (compensating for the `N - 1` samples delay of the distortion
    functions), discards the samples before `p.metricsStartIdx`, and only
    keeps the samples where the processed desired speech is active.

    Parameters
    ----------
    proc : SignalBundle object
        Processed signals.
    unproc : SignalBundle object
        Unprocessed signals.
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    procAligned : AlignedSignals object
        Aligned processed signals.
    unprocAligned : AlignedSignals object
        Aligned unprocessed signals.
    """
    delay = p.DFTsize - 1
    T = proc.nSamples - delay
    if T - p.metricsStartIdx <= 1:
        raise ValueError(f'Signals too short ({proc.nSamples} samples) for the alignment delay ({delay} samples) and metrics start index ({p.metricsStartIdx}).')

    def _select(x: SignalBundle, offset):
        idx = slice(offset + p.metricsStartIdx, offset + T)
        return AlignedSignals(
            m=x.m[idx, p.ref],
            s=x.s[idx, p.ref],
            n=x.n[idx, p.ref],
            e=x.e[idx, p.ref],
        )
    procAligned = _select(proc, delay)
    unprocAligned = _select(unproc, 0)

    # Desired-speech-active samples
    vad = base.vad_td(procAligned.s, p.vadSensitivity)[:, 0]
    if not np.any(vad):
        raise ValueError('No desired speech activity in the aligned processed signals.')
    for x in [procAligned, unprocAligned]:
        x.m, x.s, x.n, x.e = x.m[vad], x.s[vad], x.n[vad], x.e[vad]

    return procAligned, unprocAligned


def evaluate_cascade(
        out: CascadeOutputs,
        sig: SignalBundle,
        p: base.NRAECparameters
    ) -> EnhancementMeasures:
    """
    Computes the SNR and SER improvements and the speech distortion of a
    cascade's outputs with respect to the unprocessed signals.

    Parameters
    ----------
    out : CascadeOutputs object
        Cascade outputs.
    sig : SignalBundle object
        Unprocessed signals.
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    measures : EnhancementMeasures object
        Metrics.
    """
    proc, unproc = align_proc_unproc(out.sigOut, sig, p)
    metricsProc = compute_metrics(proc)
    metricsRef = compute_metrics(unproc)
    return EnhancementMeasures(
        snr=Metric(before=metricsRef.snr, after=metricsProc.snr),
        ser=Metric(before=metricsRef.ser, after=metricsProc.ser),
        sd=sd(unproc.s, proc.s),
        nSamples=len(proc.s),
    )
