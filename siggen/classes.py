import numpy as np
from typing import Optional
from dataclasses import dataclass, field


@dataclass
class RandomIRParameters:
    distribution: str = 'normal'   # distribution of the IR coefficients
        # ^^^ valid values: 'normal', 'uniform'
    maxValue: float = 1.    # maximum coefficient value (or std. dev.)
    minValue: float = -1.   # minimum coefficient value ('uniform' only)
    decay: str = 'exponential'  # IR envelope
        # ^^^ valid values: 'exponential', 'immediate' (Dirac), 'none'
    decayTimeConstant: float = 2e-3    # [s] exponential decay time constant


@dataclass
class RandomSignalsParameters:
    distribution: str = 'normal'    # distribution of the samples
        # ^^^ valid values: 'normal', 'uniform'
    maxValue: float = 1.
    minValue: float = -1.
    lowpassPole: float = 0.9    # pole of the first-order low-pass filter
        # colouring the signal (0: white signal)
    modulationFreq: float = 4.  # [Hz] frequency of the amplitude
        # modulation (syllable rate). 0: no modulation.


@dataclass
class ScenarioParameters:
    """
    Parameters for the generation of the microphone/loudspeaker signals.
    """
    fs: float = 16000.     # sampling frequency [Hz]
    sigDur: float = 4.     # signals duration [s]
    nMics: int = 2      # number of microphones
    nLoudspeakers: int = 1  # number of loudspeakers
    signalType: str = 'random'   # type of source signals
        # ^^^ valid values:
        #  - "random": random speech-like signals.
        #  - "from_file": WAV files (`desiredSignalFile`, `farEndSignalFile`).
        #  - "from_mat": complete set of signals loaded from a .mat file
        #       (`matFile`). All other fields are then ignored.
    desiredSignalFile: str = ''     # path to desired speech WAV file
    farEndSignalFile: str = ''  # path to far-end speech WAV file (one per
        # loudspeaker, the first channels are used)
    matFile: str = ''   # path to .mat file containing a `sig` structure
        # (fields `m, s, n, es, en, l, ls, ln`) and `fs`
    impulseFile: Optional[str] = None   # path to .mat file containing the
        # true echo paths (`impulse` cell array, one [Lf x M] array per
        # loudspeaker). Only used if `signalType == 'from_mat'`.
    # vvv Activity pattern: the signals are divided in equal-length
    # segments; each flag tells whether the source is active in a segment.
    desiredActivity: list[int] = field(default_factory=lambda: [0, 0, 1, 1])
    farEndActivity: list[int] = field(default_factory=lambda: [0, 1, 0, 1])
    randSignals: RandomSignalsParameters = field(
        default_factory=RandomSignalsParameters
    )   # desired speech and near-end noise ('random' signals)
    farEndRandSignals: RandomSignalsParameters = field(
        default_factory=lambda: RandomSignalsParameters(lowpassPole=0.)
    )   # far-end speech ('random' signals), white by default
    # vvv Levels
    snr: float = 5.    # [dB] desired speech to near-end noise ratio
        # (reference microphone, active segments)
    ser: float = 0.    # [dB] desired speech to echo ratio
        # (reference microphone, active segments)
    farEndSNR: float = 20.  # [dB] far-end speech to far-end noise ratio
        # in the loudspeakers (active segments)
    selfnoiseSNR: float = 50.   # [dB] near-end noise to microphone
        # self-noise ratio
    referenceSensor: int = 0    # index of the reference microphone
    # vvv Impulse responses
    rirType: str = 'random'  # type of impulse responses
        # ^^^ valid values:
        #  - "random": random decaying impulse responses.
        #  - "pyroomacoustics": shoebox room simulation (image-source method).
    lenRIR: int = 256   # [samples] length of the near-end IRs ('random')
    lenEchoPath: int = 128  # [samples] length of the echo paths ('random')
    randIR: RandomIRParameters = field(default_factory=RandomIRParameters)
    rd: list[float] = field(default_factory=lambda: [5., 4., 3.])
        # room dimensions [m] ('pyroomacoustics')
    t60: float = 0.2    # [s] reverberation time ('pyroomacoustics')
    minDistToWalls: float = 0.5     # [m] minimum distance between elements
        # and room walls ('pyroomacoustics')
    interSensorDist: float = 0.05   # [m] distance between microphones
    maxLenRIR: int = 4096   # [samples] IRs truncation length
        # ('pyroomacoustics')

    def __post_init__(self):
        """Post-initialization checks."""
        if self.signalType not in ['random', 'from_file', 'from_mat']:
            raise ValueError(f'Unknown signal type: "{self.signalType}".')
        if self.rirType not in ['random', 'pyroomacoustics']:
            raise ValueError(f'Unknown impulse response type: "{self.rirType}".')
        if self.signalType == 'from_mat' and self.matFile == '':
            raise ValueError('`matFile` must be provided if `signalType == "from_mat"`.')
        if len(self.desiredActivity) != len(self.farEndActivity):
            raise ValueError(f'The activity patterns must have the same number of segments (got {len(self.desiredActivity)} and {len(self.farEndActivity)}).')
        if not any(self.desiredActivity) or not any(self.farEndActivity):
            raise ValueError('Both the desired and far-end sources must be active in at least one segment.')
        if not 0 <= self.referenceSensor < self.nMics:
            raise ValueError(f'Reference microphone index {self.referenceSensor} out of range (number of microphones: {self.nMics}).')

    @property
    def nSamples(self):
        return int(self.sigDur * self.fs)

    def get_activity_masks(self):
        """Sample-wise activity masks of the desired and far-end sources."""
        n = self.nSamples
        bounds = np.linspace(0, n, len(self.desiredActivity) + 1).astype(int)
        maskDesired = np.zeros(n, dtype=bool)
        maskFarEnd = np.zeros(n, dtype=bool)
        for ii in range(len(self.desiredActivity)):
            maskDesired[bounds[ii]:bounds[ii + 1]] = bool(self.desiredActivity[ii])
            maskFarEnd[bounds[ii]:bounds[ii + 1]] = bool(self.farEndActivity[ii])
        return maskDesired, maskFarEnd
