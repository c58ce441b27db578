import librosa
import resampy
import numpy as np
import scipy.io as sio
import scipy.signal as sig
import pyroomacoustics as pra
from . import classes
from nraec_toolbox.n_classes import SignalBundle,\
    COMPONENTS_MICS, COMPONENTS_LOUDSPEAKERS


def build_scenario(p: classes.ScenarioParameters, seed=None):
    """
    Interprets parameters to decide whether to load signals from a .mat
    file, simulate an actual room, or generate random impulse responses,
    and builds the microphone and loudspeaker signals.

    Parameters
    ----------
    p : `ScenarioParameters` object
        Parameters.
    seed : int or None
        Random-generator seed.

    Returns
    -------
    sig : `SignalBundle` object
        Microphone and loudspeaker signals.
    echoPaths : [Lf x L x M] np.ndarray (float) or None
        True echo paths (loudspeakers to microphones).
    fs : float
        Sampling frequency [Hz].
    """
    if p.signalType == 'from_mat':
        return load_scenario_from_mat(p.matFile, p.impulseFile)

    rng = np.random.default_rng(seed)

    # Get impulse responses
    if p.rirType == 'pyroomacoustics':
        irsDesired, irsNoise, echoPaths = build_room(p, rng)
    else:
        irsDesired, irsNoise, echoPaths = generate_random_impulse_responses(
            p, rng
        )

    # Get raw source signals
    desiredRaw, farEndRaw = get_raw_source_signals(p, rng)
    maskDesired, maskFarEnd = p.get_activity_masks()
    noiseRaw = generate_rand_signal(
        p.randSignals, p.nSamples, p.fs, rng, modulate=False
    )
    farEndNoiseRaw = rng.normal(size=(p.nSamples, p.nLoudspeakers))

    # Near-end components
    s = apply_irs(desiredRaw[:, np.newaxis], irsDesired[:, np.newaxis, :])
    n = apply_irs(noiseRaw[:, np.newaxis], irsNoise[:, np.newaxis, :])
    ref = p.referenceSensor
    n *= 10 ** ((
        level_db(s[:, ref], maskDesired) - level_db(n[:, ref], maskDesired) -\
            p.snr
    ) / 20)
    # Microphone self-noise (spatially uncorrelated)
    selfNoise = rng.normal(size=n.shape)
    selfNoise *= 10 ** ((
        level_db(n[:, ref]) - level_db(selfNoise[:, ref]) - p.selfnoiseSNR
    ) / 20)
    n += selfNoise

    # Far-end components
    ls = farEndRaw
    ln = farEndNoiseRaw * 10 ** ((
        level_db(ls, maskFarEnd) - level_db(farEndNoiseRaw) - p.farEndSNR
    ) / 20)
    es = apply_irs(ls, echoPaths)
    en = apply_irs(ln, echoPaths)
    # Set the desired speech to echo ratio
    gain = 10 ** ((
        level_db(s[:, ref], maskDesired) -\
            level_db(es[:, ref] + en[:, ref], maskFarEnd) - p.ser
    ) / 20)
    ls, ln, es, en = gain * ls, gain * ln, gain * es, gain * en

    sigOut = SignalBundle.from_components(s=s, n=n, es=es, en=en, ls=ls, ln=ln)
    return sigOut, echoPaths, p.fs


def level_db(x, mask=None):
    """Mean power [dB] of `x` (over the samples in `mask`, if provided)."""
    if mask is not None:
        x = x[mask, ...]
    return 10 * np.log10(np.mean(x ** 2))


def apply_irs(x, irs):
    """
    Filters source signals through impulse responses.

    Parameters
    ----------
    x : [T x Ns] np.ndarray (float)
        Source signals.
    irs : [Lir x Ns x M] np.ndarray (float)
        Impulse responses from each source to each microphone.

    Returns
    -------
    y : [T x M] np.ndarray (float)
        Microphone signals.
    """
    T = x.shape[0]
    y = np.zeros((T, irs.shape[-1]))
    for m in range(irs.shape[-1]):
        for ii in range(x.shape[1]):
            y[:, m] += sig.fftconvolve(x[:, ii], irs[:, ii, m])[:T]
    return y


def generate_random_impulse_responses(
        p: classes.ScenarioParameters,
        rng: np.random.Generator
    ):
    """
    Generates random impulse responses.

    Returns
    -------
    irsDesired : [lenRIR x M] np.ndarray (float)
        IRs from the desired source to the microphones.
    irsNoise : [lenRIR x M] np.ndarray (float)
        IRs from the noise source to the microphones.
    echoPaths : [lenEchoPath x L x M] np.ndarray (float)
        IRs from the loudspeakers to the microphones.
    """
    irsDesired = np.stack(generate_random_rir(
        p.randIR, p.nMics, p.lenRIR, p.fs, rng
    ), axis=1)
    irsNoise = np.stack(generate_random_rir(
        p.randIR, p.nMics, p.lenRIR, p.fs, rng
    ), axis=1)
    echoPaths = np.stack(generate_random_rir(
        p.randIR, p.nMics * p.nLoudspeakers, p.lenEchoPath, p.fs, rng
    ), axis=1).reshape((p.lenEchoPath, p.nLoudspeakers, p.nMics))
    return irsDesired, irsNoise, echoPaths


def generate_random_rir(
        prir: classes.RandomIRParameters,
        n: int,
        length: int,
        fs: float,
        rng: np.random.Generator
    ) -> list[np.ndarray]:
    # Generate random RIRs
    rirs = []
    for _ in range(n):
        # Generate random RIR
        if prir.distribution == 'uniform':
            rir = rng.uniform(prir.minValue, prir.maxValue, (length,))
        elif prir.distribution == 'normal':
            rir = rng.normal(
                0,
                np.amax([np.abs(prir.maxValue), np.abs(prir.minValue)]),
                (length,)
            )
        else:
            raise ValueError(f'Unknown IR distribution: "{prir.distribution}".')
        # Add exponential decay if asked
        if prir.decay == 'exponential':
            rir *= np.exp(-np.arange(len(rir)) /\
                (prir.decayTimeConstant * fs))
        elif prir.decay == 'immediate':
            rir[1:] = 0  # turns into a Dirac
            rir[0] = np.abs(rir[0])  # make sure the Dirac is positive
        #
        rirs.append(rir)
    return rirs


def build_room(p: classes.ScenarioParameters, rng: np.random.Generator):
    """
    Builds room, adds microphones, sources, and loudspeakers, and
    simulates the impulse responses.

    Returns
    -------
    irsDesired : [Lir x M] np.ndarray (float)
        IRs from the desired source to the microphones.
    irsNoise : [Lir x M] np.ndarray (float)
        IRs from the noise source to the microphones.
    echoPaths : [Lir x L x M] np.ndarray (float)
        IRs from the loudspeakers to the microphones.
    """
    rd = np.array(p.rd, dtype=float)
    # Invert Sabine's formula to obtain the parameters for the ISM simulator
    if p.t60 == 0:
        max_order = 0
        e_absorption = 0.5  # <-- arbitrary
    else:
        e_absorption, max_order = pra.inverse_sabine(p.t60, rd)

    # Create room
    room = pra.ShoeBox(
        p=rd,
        fs=p.fs,
        max_order=max_order,
        air_absorption=False,
        materials=pra.Material(e_absorption),
    )

    def _random_position():
        return rng.uniform(size=(3,)) * (rd - 2 * p.minDistToWalls) +\
            p.minDistToWalls

    # Linear microphone array
    arrayCentre = _random_position()
    offsets = (np.arange(p.nMics) - (p.nMics - 1) / 2) * p.interSensorDist
    micCoords = arrayCentre[:, np.newaxis] + np.outer([1, 0, 0], offsets)
    room.add_microphone_array(micCoords)
    # Sources: desired, noise, loudspeakers
    nSources = 2 + p.nLoudspeakers
    for _ in range(nSources):
        room.add_source(_random_position())
    room.compute_rir()

    # Common IR length
    lenIR = min(
        p.maxLenRIR,
        min(len(room.rir[m][ii]) for m in range(p.nMics)\
            for ii in range(nSources))
    )
    irs = np.zeros((lenIR, nSources, p.nMics))
    for m in range(p.nMics):
        for ii in range(nSources):
            irs[:, ii, m] = room.rir[m][ii][:lenIR]

    return irs[:, 0, :], irs[:, 1, :], irs[:, 2:, :]


def get_raw_source_signals(
        p: classes.ScenarioParameters,
        rng: np.random.Generator
    ):
    """
    Obtain raw (unprocessed) source signals, with the activity patterns
    applied.

    Returns
    -------
    desiredRaw : [T x 1] np.ndarray (float)
        Raw desired speech signal.
    farEndRaw : [T x L] np.ndarray (float)
        Raw far-end speech signal(s) (one per loudspeaker).
    """

    def _get_source_signal(file, nChannels=1):
        """Helper function to load and process source signal."""
        # Load
        y, fsOriginal = librosa.load(file, sr=None, mono=False)
        y = np.atleast_2d(y).T  # [N x C]
        # Resample
        if fsOriginal != p.fs:
            print(f'Resampling {file} from {fsOriginal} Hz to {p.fs} Hz...')
            y = resampy.resample(y, fsOriginal, p.fs, axis=0)
        # Select channels (circular shifts of the first channel if the
        # file has too few channels)
        channels = []
        for c in range(nChannels):
            if c < y.shape[1]:
                channels.append(y[:, c])
            else:
                channels.append(np.roll(y[:, 0], c * int(p.fs / 2)))
        y = np.stack(channels, axis=1)
        # Adjust length
        while y.shape[0] < p.nSamples:
            y = np.concatenate((y, y), axis=0)  # loop
        y = y[:p.nSamples, :]
        return y / np.std(y, axis=0)  # normalize

    maskDesired, maskFarEnd = p.get_activity_masks()
    if p.signalType == 'from_file':
        desiredRaw = _get_source_signal(p.desiredSignalFile)[:, 0]
        farEndRaw = _get_source_signal(p.farEndSignalFile, p.nLoudspeakers)
    else:
        desiredRaw = generate_rand_signal(
            p.randSignals, p.nSamples, p.fs, rng
        )
        farEndRaw = np.stack([
            generate_rand_signal(p.farEndRandSignals, p.nSamples, p.fs, rng)\
                for _ in range(p.nLoudspeakers)
        ], axis=1)
    # Apply activity patterns
    desiredRaw[~maskDesired] = 0
    farEndRaw[~maskFarEnd, :] = 0

    return desiredRaw, farEndRaw


def generate_rand_signal(
        prand: classes.RandomSignalsParameters,
        n: int,
        fs: float,
        rng: np.random.Generator,
        modulate=True
    ) -> np.ndarray:
    """
    Generate random (speech-like) signal.

    Parameters
    ----------
    prand : RandomSignalsParameters object
        Parameters.
    n : int
        Desired number of samples.
    fs : float
        Sampling frequency [Hz].
    rng : np.random.Generator object
        Random generator.
    modulate : bool
        If False, do not apply the amplitude modulation.

    Returns
    -------
    y : [N x 1] np.ndarray (float)
        Random signal (unit variance).
    """
    if prand.distribution == 'uniform':
        y = rng.uniform(prand.minValue, prand.maxValue, (n,))
    elif prand.distribution == 'normal':
        y = rng.normal(
            0,
            np.amax([np.abs(prand.maxValue), np.abs(prand.minValue)]),
            (n,)
        )
    else:
        raise ValueError(f'Unknown signal distribution: "{prand.distribution}".')
    # Colour
    if prand.lowpassPole != 0:
        y = sig.lfilter([1], [1, -prand.lowpassPole], y)
    # Amplitude modulation
    if modulate and prand.modulationFreq > 0:
        t = np.arange(n) / fs
        y *= 0.1 + np.abs(np.sin(np.pi * prand.modulationFreq * t))

    return y / np.std(y)


def load_scenario_from_mat(matFile, impulseFile=None):
    """
    Loads microphone and loudspeaker signals from a .mat file containing
    a `sig` structure (fields `m, s, n, es, en, l, ls, ln`, each [T x M]
    or [T x L]) and the sampling frequency `fs`.

    Parameters
    ----------
    matFile : str
        Path to .mat file.
    impulseFile : str or None
        Path to .mat file containing the true echo paths (`impulse` cell
        array, one [Lf x M] array per loudspeaker).

    Returns
    -------
    sig : `SignalBundle` object
        Microphone and loudspeaker signals.
    echoPaths : [Lf x L x M] np.ndarray (float) or None
        True echo paths.
    fs : float
        Sampling frequency [Hz].
    """
    mat = sio.loadmat(matFile, squeeze_me=True, struct_as_record=False)
    for key in ['sig', 'fs']:
        if key not in mat:
            raise ValueError(f'Field "{key}" not found in "{matFile}".')
    components = dict()
    for name in COMPONENTS_MICS + COMPONENTS_LOUDSPEAKERS:
        if not hasattr(mat['sig'], name):
            raise ValueError(f'Signal component "{name}" not found in "{matFile}".')
        components[name] = getattr(mat['sig'], name)
    sigOut = SignalBundle(**components)

    echoPaths = None
    if impulseFile is not None:
        imp = sio.loadmat(impulseFile, squeeze_me=True)
        if 'impulse' not in imp:
            raise ValueError(f'Field "impulse" not found in "{impulseFile}".')
        imp = imp['impulse']
        if imp.dtype == object:
            imp = list(imp.ravel())
        else:
            imp = [imp]     # single loudspeaker
        echoPaths = np.stack(
            [np.reshape(x, (x.shape[0], -1)) for x in imp], axis=1
        )
        if echoPaths.shape[1:] != (sigOut.nLoudspeakers, sigOut.nMics):
            raise ValueError(f'The echo paths ({echoPaths.shape[1]}x{echoPaths.shape[2]}) do not match the signals ({sigOut.nLoudspeakers} loudspeaker(s), {sigOut.nMics} microphone(s)).')

    return sigOut, echoPaths, float(mat['fs'])
