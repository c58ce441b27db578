# Signal, output, and test-parameters classes for the NR-AEC cascades.

import shutil
import numpy as np
from pathlib import Path
from typing import Optional
import dataclasses as dc
from dataclasses import dataclass, field
import nraec_toolbox.dataclass_methods as met
from nraec_toolbox.n_base import NRAECparameters
from siggen.classes import ScenarioParameters


COMPONENTS_MICS = ['m', 's', 'n', 'es', 'en']
COMPONENTS_LOUDSPEAKERS = ['l', 'ls', 'ln']


@dataclass(frozen=True, eq=False)
class SignalBundle:
    """
    Multichannel microphone and loudspeaker signals, with their individual
    components. All arrays are [T x M] (microphones) or [T x L]
    (loudspeakers) np.ndarray's (float).
    """
    m: np.ndarray   # microphone signals, `m = s + n + es + en`
    s: np.ndarray   # desired (near-end) speech
    n: np.ndarray   # near-end room noise
    es: np.ndarray  # far-end speech component in the echo
    en: np.ndarray  # far-end noise component in the echo
    l: np.ndarray   # loudspeaker signals, `l = ls + ln`
    ls: np.ndarray  # far-end speech component in the loudspeakers
    ln: np.ndarray  # far-end noise component in the loudspeakers

    def __post_init__(self):
        """Checks dimensions and converts single-channel vectors into
        [T x 1] arrays."""
        for name in COMPONENTS_MICS + COMPONENTS_LOUDSPEAKERS:
            x = np.asarray(getattr(self, name), dtype=float)
            if x.ndim == 1:
                x = x[:, np.newaxis]
            elif x.ndim != 2:
                raise ValueError(f'Signal component "{name}" must be 1-D or 2-D (got {x.ndim}-D).')
            object.__setattr__(self, name, x)
        T = self.m.shape[0]
        for name in COMPONENTS_MICS:
            if getattr(self, name).shape != self.m.shape:
                raise ValueError(f'Signal component "{name}" has shape {getattr(self, name).shape}, expected {self.m.shape} (same as "m").')
        for name in COMPONENTS_LOUDSPEAKERS:
            if getattr(self, name).shape != self.l.shape:
                raise ValueError(f'Signal component "{name}" has shape {getattr(self, name).shape}, expected {self.l.shape} (same as "l").')
        if self.l.shape[0] != T:
            raise ValueError(f'Microphone ({T}) and loudspeaker ({self.l.shape[0]}) signals must have the same length.')

    @classmethod
    def from_components(cls, s, n, es, en, ls, ln):
        """Builds a bundle from its components (`m` and `l` are summed)."""
        return cls(
            m=s + n + es + en, s=s, n=n, es=es, en=en,
            l=ls + ln, ls=ls, ln=ln
        )

    @property
    def nSamples(self):
        return self.m.shape[0]

    @property
    def nMics(self):
        return self.m.shape[1]

    @property
    def nLoudspeakers(self):
        return self.l.shape[1]

    @property
    def e(self):
        """Echo signals (far-end speech and noise)."""
        return self.es + self.en

    def replace(self, **changes):
        return dc.replace(self, **changes)

    def is_consistent(self, rtol=1e-7, atol=1e-10, micsOnly=False):
        """
        Checks the `m = s + n + es + en` and `l = ls + ln` relations.

        The relations do not hold for extended-NR (NRext) outputs: the
        loudspeaker outputs also contain filtered desired speech and
        near-end noise, which have no `ls`/`ln` counterpart. After NRext,
        only the microphone relation holds (`micsOnly=True`), and after
        the subsequent echo cancellation neither does.
        """
        micsOk = np.allclose(
            self.m, self.s + self.n + self.es + self.en, rtol=rtol, atol=atol
        )
        if micsOnly:
            return micsOk
        return micsOk and np.allclose(
            self.l, self.ls + self.ln, rtol=rtol, atol=atol
        )


@dataclass
class NRoutputs:
    """Outputs of the noise-reduction filter estimators."""
    W: np.ndarray = None    # frequency-domain filters
        # [C x C x Nf] (batch) or [C x C x K x Nf] (adaptive)
    Rxx: np.ndarray = None  # [Nf x C x C] target-plus-interference
        # correlation matrices (final estimate in adaptive mode)
    Rnn: np.ndarray = None  # [Nf x C x C] interference-only correlation
        # matrices (final estimate in adaptive mode)
    vadTarget: np.ndarray = None    # [K x Nf] frames used for `Rxx`
    vadInterf: np.ndarray = None    # [K x Nf] frames used for `Rnn`
    rankRequested: int = 0  # requested GEVD rank
    rankEff: np.ndarray = None  # [Nf x 1] (batch) or [K x Nf] (adaptive)
        # rank actually used
    extended: bool = False  # True if microphones and loudspeakers were
        # filtered jointly (NRext)

    @property
    def nRankClamps(self):
        return int(np.sum(self.rankEff < self.rankRequested))


@dataclass
class AECoutputs:
    """Outputs of the echo-path estimators."""
    fhat: np.ndarray = None     # echo-path estimates
        # [Lfhat x L x M] (batch) or [Lfhat x L x M x T] (adaptive)
    vadUpdate: np.ndarray = None    # [T x M] samples where the filter was
        # allowed to update
    nUpdates: np.ndarray = None     # [M x 1] number of NLMS updates

    @property
    def fhatFinal(self):
        """Final echo-path estimate ([Lfhat x L x M])."""
        if self.fhat.ndim == 4:
            return self.fhat[..., -1]
        return self.fhat


@dataclass
class CascadeOutputs:
    """Outputs of a NR-AEC or NRext-AEC cascade."""
    name: str = ''  # cascade name ("NR-AEC" or "NRext-AEC")
    processingMode: str = 'batch'
    sigNR: SignalBundle = None  # signals after noise reduction
    sigOut: SignalBundle = None     # signals after echo cancellation
    nr: NRoutputs = None    # noise-reduction filters
    wTD: np.ndarray = None  # time-domain NR filters (distortion functions)
        # [(2N-1) x C x C] (batch) or [(2N-1) x C x C x K] (adaptive)
    updateInstants: np.ndarray = None   # [K x 1] sample indices of the
        # adaptive NR filter updates (None in batch mode)
    aec: AECoutputs = None  # echo-path estimates
    runTime: float = 0.     # [s] processing time

    def save(self, foldername, light=False):
        """Saves dataclass to Pickle archive. If `light`, the (potentially
        large) filter trajectories are not exported."""
        out = self
        if light:
            out = dc.replace(
                self,
                nr=dc.replace(self.nr, W=None),
                wTD=None,
                aec=dc.replace(self.aec, fhat=self.aec.fhatFinal),
            )
        met.save(out, foldername)

    def load(self, foldername):
        """Loads dataclass from Pickle archive in folder `foldername`."""
        return met.load(self, foldername, silent=True)


@dataclass
class ExportParameters:
    exportFolder: str = './out'    # folder where to export the results
    bypassAllExports: bool = False  # if True, do not export anything
    wavFiles: bool = False  # if True, export reference-microphone signals
    signalsPlot: bool = True    # if True, export signals/echo path figures
    pickleOutputs: bool = False     # if True, export `CascadeOutputs`
        # objects as .pkl.gz archives (without filter trajectories)
    showFigures: bool = False   # if True, show figures (blocking)


@dataclass
class TestParameters:
    """Parameters for a full test (scenario generation, cascades,
    metrics, exports)."""
    scenarioParams: ScenarioParameters = field(
        default_factory=ScenarioParameters
    )
    nraecParams: NRAECparameters = field(default_factory=NRAECparameters)
    exportParams: ExportParameters = field(default_factory=ExportParameters)
    seed: int = 12345   # random-generator seed
    originYaml: Optional[str] = None  # path to the YAML file the
        # parameters were loaded from (None if not loaded from a file)

    def __post_init__(self):
        if self.nraecParams.fs != self.scenarioParams.fs:
            raise ValueError(f'Sampling frequency mismatch between scenario ({self.scenarioParams.fs} Hz) and cascade ({self.nraecParams.fs} Hz) parameters.')

    def load_from_yaml(self, path) -> 'TestParameters':
        """Loads dataclass from YAML file."""
        out = met.load_from_yaml(path, self)
        out.originYaml = str(path)
        return out

    def save_yaml(self):
        """Copies the YAML file the parameters were loaded from to the
        export folder."""
        if self.originYaml is None:
            raise ValueError('Cannot save YAML file: the parameters were not loaded from a YAML file.')
        Path(self.exportParams.exportFolder).mkdir(parents=True, exist_ok=True)
        shutil.copy(self.originYaml, self.exportParams.exportFolder)
