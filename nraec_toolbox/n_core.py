# Core functions: NR-AEC and NRext-AEC cascades.
#
# References
# ----------
# [1] A. Roebben, T. van Waterschoot, and M. Moonen, "Cascaded noise
# reduction and acoustic echo cancellation based on an extended noise
# reduction," in EUSIPCO, Lyon, France, Aug. 2024.

import time, datetime
import numpy as np
from pyinstrument import Profiler
import nraec_toolbox.n_base as base
import nraec_toolbox.n_nr as nr
import nraec_toolbox.n_aec as aec
from nraec_toolbox.n_classes import SignalBundle, CascadeOutputs


def nraec(sig: SignalBundle, p: base.NRAECparameters) -> CascadeOutputs:
    """
    Batch NR-AEC: multichannel NR on the microphone signals followed by
    an NLMS AEC.

    Parameters
    ----------
    sig : SignalBundle object
        Unprocessed microphone and loudspeaker signals.
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    out : CascadeOutputs object
        Cascade outputs.
    """
    t0 = time.perf_counter()
    # Noise reduction
    nrOut = nr.compute_nr(sig, p)
    wTD = base.stft_filters_to_td(
        nrOut.W, p.winAnalysis, p.winSynthesis, p.frameShift
    )
    sigNR = apply_nr_filters(sig, wTD, extended=False)
    # Echo cancellation
    aecOut = aec.compute_aec(sigNR, p)
    sigOut = apply_aec_filters(sigNR, aecOut.fhat)

    return CascadeOutputs(
        name='NR-AEC',
        processingMode='batch',
        sigNR=sigNR,
        sigOut=sigOut,
        nr=nrOut,
        wTD=wTD,
        aec=aecOut,
        runTime=time.perf_counter() - t0,
    )


def nrextaec(sig: SignalBundle, p: base.NRAECparameters) -> CascadeOutputs:
    """
    Batch NRext-AEC: extended multichannel NR, filtering the microphone
    and loudspeaker signals jointly, followed by an NLMS AEC operating on
    the processed microphone and loudspeaker signals.
    """
    t0 = time.perf_counter()
    # Extended noise reduction
    nrOut = nr.compute_nrext(sig, p)
    wTD = base.stft_filters_to_td(
        nrOut.W, p.winAnalysis, p.winSynthesis, p.frameShift
    )
    sigNR = apply_nr_filters(sig, wTD, extended=True)
    # Echo cancellation
    aecOut = aec.compute_aec(sigNR, p)
    sigOut = apply_aec_filters(sigNR, aecOut.fhat)

    return CascadeOutputs(
        name='NRext-AEC',
        processingMode='batch',
        sigNR=sigNR,
        sigOut=sigOut,
        nr=nrOut,
        wTD=wTD,
        aec=aecOut,
        runTime=time.perf_counter() - t0,
    )


def nraec_adaptive(sig: SignalBundle, p: base.NRAECparameters) -> CascadeOutputs:
    """
    Adaptive NR-AEC. The NR filters are re-estimated every frame and
    each one is applied (as a held filter) from the end of its frame on;
    before the first frame ends, the microphone signals are passed
    through. The AEC filters are re-estimated at every sample.
    """
    t0 = time.perf_counter()
    nrOut = nr.compute_nr_adaptive(sig, p)
    wTD = base.stft_filters_to_td(
        nrOut.W, p.winAnalysis, p.winSynthesis, p.frameShift
    )
    updateInstants = base.filter_update_instants(
        wTD.shape[-1], p.DFTsize, p.frameShift
    )
    sigNR = apply_nr_filters(sig, wTD, extended=False,
        updateInstants=updateInstants)
    aecOut = aec.compute_aec_adaptive(sigNR, p)
    sigOut = apply_aec_filters(sigNR, aecOut.fhat)

    return CascadeOutputs(
        name='NR-AEC',
        processingMode='adaptive',
        sigNR=sigNR,
        sigOut=sigOut,
        nr=nrOut,
        wTD=wTD,
        updateInstants=updateInstants,
        aec=aecOut,
        runTime=time.perf_counter() - t0,
    )


def nrextaec_adaptive(sig: SignalBundle, p: base.NRAECparameters) -> CascadeOutputs:
    """Adaptive NRext-AEC (see `nraec_adaptive()` and `nrextaec()`)."""
    t0 = time.perf_counter()
    nrOut = nr.compute_nrext_adaptive(sig, p)
    wTD = base.stft_filters_to_td(
        nrOut.W, p.winAnalysis, p.winSynthesis, p.frameShift
    )
    updateInstants = base.filter_update_instants(
        wTD.shape[-1], p.DFTsize, p.frameShift
    )
    sigNR = apply_nr_filters(sig, wTD, extended=True,
        updateInstants=updateInstants)
    aecOut = aec.compute_aec_adaptive(sigNR, p)
    sigOut = apply_aec_filters(sigNR, aecOut.fhat)

    return CascadeOutputs(
        name='NRext-AEC',
        processingMode='adaptive',
        sigNR=sigNR,
        sigOut=sigOut,
        nr=nrOut,
        wTD=wTD,
        updateInstants=updateInstants,
        aec=aecOut,
        runTime=time.perf_counter() - t0,
    )


def apply_nr_filters(
        sig: SignalBundle,
        wTD: np.ndarray,
        extended=False,
        updateInstants=None
    ) -> SignalBundle:
    """
    Applies the time-domain NR filters to every signal component.

    Parameters
    ----------
    sig : SignalBundle object
        Unprocessed signals.
    wTD : [Lw x C x C] or [Lw x C x C x K] np.ndarray (float)
        Time-domain filters (`C = M` or, if `extended`, `C = M + L`).
    extended : bool
        If True, the filters operate on the stacked microphone and
        loudspeaker signals, and the loudspeaker signals are processed too.
    updateInstants : [K x 1] np.ndarray (int) or None
        Sample indices from which each filter is applied (adaptive mode).
        If None, `wTD` must be a single (batch) filter.

    Returns
    -------
    sigNR : SignalBundle object
        Processed signals.
    """
    M, L = sig.nMics, sig.nLoudspeakers
    nChannels = M + L if extended else M
    if wTD.shape[1] != nChannels or wTD.shape[2] != nChannels:
        raise ValueError(f'The NR filters are {wTD.shape[1]}x{wTD.shape[2]}, expected {nChannels}x{nChannels}.')

    zerosL = np.zeros_like(sig.l)
    if extended:
        inputs = {
            'm': np.concatenate((sig.m, sig.l), axis=1),
            's': np.concatenate((sig.s, zerosL), axis=1),
            'n': np.concatenate((sig.n, zerosL), axis=1),
            'es': np.concatenate((sig.es, sig.ls), axis=1),
            'en': np.concatenate((sig.en, sig.ln), axis=1),
        }
        # Loudspeaker-side outputs and the stacked input they are
        # synthesized from
        inputsL = {'l': 'm', 'ls': 'es', 'ln': 'en'}
    else:
        inputs = {
            'm': sig.m, 's': sig.s, 'n': sig.n, 'es': sig.es, 'en': sig.en
        }

    def _filter(x, c):
        if updateInstants is None:
            return base.apply_fir(x, wTD[:, :, c])
        initFilter = np.zeros((1, nChannels))
        initFilter[0, c] = 1    # pass-through
        return base.apply_held_filters(
            x, wTD[:, :, c, :], updateInstants, initFilter
        )

    out = dict()
    for name, x in inputs.items():
        out[name] = np.stack([_filter(x, c) for c in range(M)], axis=1)
    if extended:
        for name, inputName in inputsL.items():
            out[name] = np.stack(
                [_filter(inputs[inputName], M + c) for c in range(L)],
                axis=1
            )
    else:
        out.update({'l': sig.l, 'ls': sig.ls, 'ln': sig.ln})

    return SignalBundle(**out)


def apply_aec_filters(sig: SignalBundle, fhat: np.ndarray) -> SignalBundle:
    """
    Subtracts the echo estimates from the microphone signal and from its
    echo components. The desired speech, near-end noise, and loudspeaker
    signals are passed through.

    Parameters
    ----------
    sig : SignalBundle object
        Signals (after noise reduction).
    fhat : [Lfhat x L x M] or [Lfhat x L x M x T] np.ndarray (float)
        Echo-path estimates (static or per sample).

    Returns
    -------
    sigOut : SignalBundle object
        Processed signals.
    """
    def _echo_estimate(x):
        if fhat.ndim == 4:
            return base.apply_time_varying_fir(np.ascontiguousarray(x), fhat)
        return np.stack(
            [base.apply_fir(x, fhat[:, :, c]) for c in range(sig.nMics)],
            axis=1
        )

    return sig.replace(
        m=sig.m - _echo_estimate(sig.l),
        es=sig.es - _echo_estimate(sig.ls),
        en=sig.en - _echo_estimate(sig.ln),
    )


def run_cascades(
        sig: SignalBundle,
        p: base.NRAECparameters
    ) -> tuple[CascadeOutputs, CascadeOutputs]:
    """
    Runs the NR-AEC and NRext-AEC cascades, in batch or adaptive mode
    depending on `p.processingMode`.

    Parameters
    ----------
    sig : SignalBundle object
        Unprocessed microphone and loudspeaker signals.
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    outNRAEC : CascadeOutputs object
        NR-AEC outputs.
    outNRextAEC : CascadeOutputs object
        NRext-AEC outputs.
    """
    if p.is_adaptive():
        cascades = [nraec_adaptive, nrextaec_adaptive]
    else:
        cascades = [nraec, nrextaec]

    # Profiling
    if p.printouts.show_profiler():
        profiler = Profiler()
        profiler.start()

    outs = []
    for cascade in cascades:
        if p.printouts.verbose:
            print(f'Running {cascade.__name__}() ({p.processingMode} mode)...')
        out = cascade(sig, p)
        if p.printouts.show_timing():
            dur = out.runTime
            sigDur = sig.nSamples / p.fs
            print(f'{out.name}: {sigDur}s of signal processed in {str(datetime.timedelta(seconds=dur))}.')
            print(f'(Real-time processing factor: {np.round(sigDur / dur, 4)})')
        outs.append(out)

    if p.printouts.show_profiler():
        profiler.stop()
        profiler.print()

    return outs[0], outs[1]
