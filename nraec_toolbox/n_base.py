# Basic functions necessary for the good functioning of the NR-AEC cascades.
# -- Mostly surrounding the filter-design functions in `n_nr.py` and the
# cascades in `n_core.py`: parameters, WOLA transform, distortion function
# approximation, voice activity detection, and FIR filtering helpers.

import warnings
import numpy as np
from numba import njit
import scipy.signal as sig
import scipy.linalg as sla
from typing import Optional
from dataclasses import dataclass, field


@dataclass(frozen=True)
class PrintoutsParameters:
    verbose: bool = True    # if True, enable print outs during processing.
    printoutProfiler: bool = False  # if True, profile the cascades with
        # `pyinstrument` and print the profiler's output.
    printoutTiming: bool = True    # controls printouts of processing times.
    printoutRankClamps: bool = True    # controls printouts of the number of
        # (frame-)bins where the requested GEVD rank could not be attained.

    def show_profiler(self):
        return self.printoutProfiler and self.verbose

    def show_timing(self):
        return self.printoutTiming and self.verbose

    def show_rank_clamps(self):
        return self.printoutRankClamps and self.verbose


@dataclass(frozen=True)
class NRAECparameters:
    """
    Parameters for the NR-AEC and NRext-AEC cascades.

    References
    ----------
    - [1] A. Roebben, T. van Waterschoot, and M. Moonen, "Cascaded noise
    reduction and acoustic echo cancellation based on an extended noise
    reduction," in EUSIPCO, Lyon, France, Aug. 2024.

    - [2] R. Serizel, M. Moonen, B. Van Dijk and J. Wouters, "Low-rank
    Approximation Based Multichannel Wiener Filter Algorithms for Noise
    Reduction with Application in Cochlear Implants," IEEE/ACM Transactions
    on Audio, Speech, and Language Processing, vol. 22, no. 4, pp. 785-799,
    April 2014.
    """
    # --- General
    fs: float = 16000.  # sampling frequency [Hz]
    ref: int = 0    # index of the reference microphone
    nMics: Optional[int] = None   # number of microphones (checked against the
        # signals if not None)
    nLoudspeakers: Optional[int] = None   # number of loudspeakers (checked against the
        # signals if not None)
    processingMode: str = 'batch'  # processing mode
        # - "batch": filters estimated over the entire signals.
        # - "adaptive": filters re-estimated every frame (NR) and every
        #       sample (AEC).
    # --- WOLA
    DFTsize: int = 512  # DFT size `N`
    frameShift: int = 256   # WOLA frame shift `S` [samples]
    winType: str = 'sqrthann'  # type of analysis and synthesis windows
        # - 'sqrthann': sqrt(hann), periodic
        # - 'rect': rectangular window, normalized by the WOLA overlap
    # --- VAD
    vadSensitivity: float = 1e-5    # sensitivity of the standard deviation
        # in the VAD threshold.
    # --- Noise reduction (NR and NRext)
    rankS: int = 1  # requested rank of the desired speech correlation matrix
    rankSES: Optional[int] = None     # requested rank of the extended desired speech
        # plus far-end speech correlation matrix (NRext).
        # If None, set to `L + 1` (number of loudspeakers plus one).
    forgettingFactor: float = 0.995   # exponential averaging constant
        # `lambda` for the correlation matrices (adaptive mode only).
    covMatRegularization: float = 1e-6  # scaling of the identity matrix
        # used to seed the correlation matrices.
    # --- Acoustic echo cancellation
    Lfhat: int = 128    # length of the time-domain AEC filters [samples]
    mu: float = 0.1     # NLMS step size
    alpha: float = 1e-6    # NLMS regularization
    aecBatchEchoGating: bool = False  # if True, the batch AEC additionally
        # requires echo activity to update its filter (as in adaptive mode).
    # --- Metrics
    metricsStartIdx: int = 0    # [samples] index (after alignment) from
        # which the metrics are computed.
    # --- Printouts
    printouts: PrintoutsParameters = field(
        default_factory=PrintoutsParameters
    )

    def __post_init__(self):
        """Checks fields consistency after dataclass instance
        initialisation."""
        if self.processingMode not in ['batch', 'adaptive']:
            raise ValueError(f'Unknown processing mode: "{self.processingMode}".')
        if self.DFTsize % 2 != 0 or self.DFTsize < 2:
            raise ValueError(f'The DFT size must be an even integer (current value: {self.DFTsize}).')
        if not 0 < self.frameShift < self.DFTsize:
            raise ValueError(f'The frame shift ({self.frameShift}) must be strictly between 0 and the DFT size ({self.DFTsize}).')
        if self.winType not in ['sqrthann', 'rect']:
            raise ValueError(f'Unknown window type: "{self.winType}".')
        if not 0 < self.forgettingFactor < 1:
            raise ValueError(f'The forgetting factor must be in ]0, 1[ (current value: {self.forgettingFactor}).')
        if self.rankS < 0:
            raise ValueError(f'`rankS` must be non-negative (current value: {self.rankS}).')
        if self.rankSES is not None and self.rankSES < 0:
            raise ValueError(f'`rankSES` must be non-negative (current value: {self.rankSES}).')
        if self.Lfhat < 1:
            raise ValueError(f'`Lfhat` must be at least 1 (current value: {self.Lfhat}).')
        if self.mu <= 0 or self.alpha < 0:
            raise ValueError(f'Invalid NLMS parameters (mu={self.mu}, alpha={self.alpha}).')
        if self.covMatRegularization < 0:
            raise ValueError(f'`covMatRegularization` must be non-negative (current value: {self.covMatRegularization}).')
        if self.metricsStartIdx < 0:
            raise ValueError(f'`metricsStartIdx` must be non-negative (current value: {self.metricsStartIdx}).')

    @property
    def nBins(self):
        return self.DFTsize // 2 + 1

    @property
    def winAnalysis(self):
        return get_window(self.winType, self.DFTsize, self.frameShift)

    @property
    def winSynthesis(self):
        return get_window(self.winType, self.DFTsize, self.frameShift)

    def is_adaptive(self):
        return self.processingMode == 'adaptive'

    def get_rank_ses(self, nLoudspeakers):
        """Returns the NRext rank (`L + 1` unless set explicitly)."""
        if self.rankSES is None:
            return nLoudspeakers + 1
        return self.rankSES

    def check_dimensions(self, nMics, nLoudspeakers):
        """Checks the signal dimensions against the parameters."""
        if self.nMics is not None and self.nMics != nMics:
            raise ValueError(f'The signals contain {nMics} microphone channel(s), but `nMics` is {self.nMics}.')
        if self.nLoudspeakers is not None and\
            self.nLoudspeakers != nLoudspeakers:
            raise ValueError(f'The signals contain {nLoudspeakers} loudspeaker channel(s), but `nLoudspeakers` is {self.nLoudspeakers}.')
        if not 0 <= self.ref < nMics:
            raise ValueError(f'Reference microphone index {self.ref} out of range (number of microphones: {nMics}).')


def get_window(winType, N, shift):
    """
    Creates a WOLA window satisfying the completeness condition
    `sum_l win[n - l * shift] ** 2 == 1` (analysis and synthesis windows
    being identical).

    Parameters
    ----------
    winType : str
        Window type ('sqrthann' or 'rect').
    N : int
        Window length (DFT size).
    shift : int
        Frame shift [samples].

    Returns
    -------
    win : [N x 1] np.ndarray (float)
        Window.
    """
    if winType == 'sqrthann':
        win = np.sqrt(sig.windows.hann(N, sym=False))
        if 2 * shift != N:
            # Rescale for other overlaps
            win *= np.sqrt(2 * shift / N)
    elif winType == 'rect':
        win = np.ones(N) * np.sqrt(shift / N)
    else:
        raise ValueError(f'Unknown window type: {winType}')
    return win


def get_nframes(T, N, shift):
    """Number of WOLA frames in a `T`-samples-long signal."""
    nFrames = (T - shift) // (N - shift)
    # Frames starting beyond `T - N` do not fit (shifts larger than N/2)
    return int(min(nFrames, (T - N) // shift + 1))


def wola_analysis(x, win, N, shift):
    """
    WOLA analysis: splits a multichannel time-domain signal into
    overlapping windowed frames and computes their DFT.

    Parameters
    ----------
    x : [T x C] np.ndarray (float)
        Time-domain signal(s).
    win : [N x 1] np.ndarray (float)
        Analysis window.
    N : int
        DFT size.
    shift : int
        Frame shift [samples].

    Returns
    -------
    X : [C x K x (N/2+1)] np.ndarray (complex)
        Frame-frequency representation (positive frequencies only).
    """
    if x.ndim == 1:
        x = x[:, np.newaxis]
    check_wola_dimensions(win, N, shift)
    T = x.shape[0]
    if T < N:
        raise ValueError(f'The signal ({T} samples) is shorter than one WOLA frame ({N} samples).')

    nFrames = get_nframes(T, N, shift)
    # [K x N] indices of the frames' samples
    idx = np.arange(nFrames)[:, np.newaxis] * shift + np.arange(N)
    frames = x[idx, :] * win[np.newaxis, :, np.newaxis]  # [K x N x C]
    X = np.fft.fft(frames, n=N, axis=1)[:, :N // 2 + 1, :]
    return np.transpose(X, axes=[2, 0, 1])


def wola_synthesis(X, win, N, shift):
    """
    WOLA synthesis: inverse DFT of each frame (after conjugate-symmetric
    extension), synthesis windowing and overlap-add.

    Parameters
    ----------
    X : [C x K x (N/2+1)] np.ndarray (complex)
        Frame-frequency representation (positive frequencies only).
    win : [N x 1] np.ndarray (float)
        Synthesis window.
    N : int
        DFT size.
    shift : int
        Frame shift [samples].

    Returns
    -------
    x : [T x C] np.ndarray (float)
        Time-domain signal(s), with `T = K * (N - shift) + shift`.
    """
    check_wola_dimensions(win, N, shift)
    if X.ndim != 3:
        raise ValueError(f'Expected a [C x K x (N/2+1)] array, got {X.ndim} dimension(s).')
    if X.shape[-1] != N // 2 + 1:
        raise ValueError(f'The number of frequency bins ({X.shape[-1]}) does not match the DFT size ({N} -> {N // 2 + 1} bins).')
    nChannels, nFrames = X.shape[0], X.shape[1]

    frames = back_to_time_domain(X, N, axis=-1) * win  # [C x K x N]
    T = max(nFrames * (N - shift) + shift, (nFrames - 1) * shift + N)
    x = np.zeros((T, nChannels))
    for l in range(nFrames):
        x[l * shift:l * shift + N, :] += frames[:, l, :].T
    return x


def check_wola_dimensions(win, N, shift):
    """Fails fast if the WOLA settings are inconsistent."""
    if N % 2 != 0:
        raise ValueError(f'The DFT size must be even (current value: {N}).')
    if len(win) != N:
        raise ValueError(f'The window length ({len(win)}) must be equal to the DFT size ({N}).')
    if not 0 < shift < N:
        raise ValueError(f'The frame shift ({shift}) must be strictly between 0 and the DFT size ({N}).')


def back_to_time_domain(x, n, axis=0):
    """
    Performs an IFFT after pre-processing of a frequency-domain
    signal chunk.

    Parameters
    ----------
    x : np.ndarray of complex
        Frequency-domain signal to be transferred back to time domain
        (positive frequencies only).
    n : int
        IFFT order.
    axis : int
        Array axis where to perform IFFT.

    Returns
    -------
    xout : np.ndarray of floats
        Time-domain version of signal.
    """
    x = np.moveaxis(np.array(x, dtype=complex), axis, 0)
    # Check dimension
    if x.shape[0] != n // 2 + 1:
        raise ValueError('`x` should be (n/2+1)-long along the IFFT axis.')

    x[0, ...] = x[0, ...].real      # Set DC to real value
    x[-1, ...] = x[-1, ...].real    # Set Nyquist to real value
    x = np.concatenate((x, np.flip(x[1:-1, ...].conj(), axis=0)), axis=0)
    xout = np.fft.ifft(x, n, axis=0).real
    return np.moveaxis(xout, 0, axis)


def dist_fct_approx(wHat, h, f, R):
    """
    Distortion function approximation of the WOLA filtering process: the
    time-domain FIR filter equivalent to applying the frequency-domain
    filter `wHat` (as `wHat^H * y`) within a full WOLA analysis-synthesis
    cycle. The resulting filter has a group delay of `N - 1` samples.

    Parameters
    ----------
    wHat : [(N/2+1) x C] np.ndarray (complex)
        Frequency-domain filter coefficients for each of the `C` channels
        (>0 freqs. only).
    h : [N x 1] np.ndarray (float)
        WOLA analysis window (time-domain).
    f : [N x 1] np.ndarray (float)
        WOLA synthesis window (time-domain).
    R : int
        Window shift [samples].

    Returns
    -------
    wIR_out : [(2 * N - 1) x C] np.ndarray (float)
        Time-domain distortion function approx. of the WOLA filtering process.
    """
    n = len(h)
    if wHat.ndim == 1:
        wHat = wHat[:, np.newaxis]
    if wHat.shape[0] != n // 2 + 1:
        raise ValueError(f'The number of rows in the filter ({wHat.shape[0]}) must equal half the window length plus one ({n // 2 + 1}).')
    if len(f) != n:
        raise ValueError(f'Analysis ({n}) and synthesis ({len(f)}) windows must have the same length.')

    wTD = back_to_time_domain(wHat.conj(), n, axis=0)
    # Diagonal offset of each entry of the [n x n] matrices
    ii, jj = np.indices((n, n))
    offsets = (jj - ii + n - 1).ravel()
    wIR_out = np.zeros((2 * n - 1, wTD.shape[1]))
    for m in range(wTD.shape[1]):
        # Circulant matrix generated by the (circularly) reversed kernel
        Hmat = sla.circulant(np.roll(np.flip(wTD[:, m]), 1))
        Amat = f[:, np.newaxis] * Hmat * h[np.newaxis, :]
        # Sum along each diagonal
        wIR_out[:, m] = np.bincount(
            offsets, weights=Amat.ravel(), minlength=2 * n - 1
        )

    wIR_out /= R

    return wIR_out


def stft_filters_to_td(W, h, f, R):
    """
    Converts a stack of frequency-domain multichannel filters into
    time-domain distortion functions, one per output channel (and per
    frame, in the adaptive case).

    Parameters
    ----------
    W : [C x C x (N/2+1)] or [C x C x K x (N/2+1)] np.ndarray (complex)
        Frequency-domain filters. Column `c` produces output channel `c`.
    h : [N x 1] np.ndarray (float)
        WOLA analysis window.
    f : [N x 1] np.ndarray (float)
        WOLA synthesis window.
    R : int
        Window shift [samples].

    Returns
    -------
    w : [(2N-1) x C x C] or [(2N-1) x C x C x K] np.ndarray (float)
        Time-domain filters. `w[:, :, c]` is the multichannel FIR filter
        producing output channel `c`.
    """
    check_finite(W, 'frequency-domain filter stack')
    n = len(h)
    nChannels = W.shape[0]
    if W.ndim == 3:
        w = np.zeros((2 * n - 1, nChannels, nChannels))
        for c in range(nChannels):
            w[:, :, c] = dist_fct_approx(W[:, c, :].T, h, f, R)
    elif W.ndim == 4:
        nFrames = W.shape[2]
        w = np.zeros((2 * n - 1, nChannels, nChannels, nFrames))
        for k in range(nFrames):
            for c in range(nChannels):
                w[:, :, c, k] = dist_fct_approx(W[:, c, k, :].T, h, f, R)
    else:
        raise ValueError(f'Unexpected filter stack dimensions: {W.shape}.')
    return w


def vad_stft(X, sensitivity, ref=0):
    """
    Frame-frequency voice activity detection.
    A (frame, bin) pair is active if its magnitude at the reference channel
    exceeds `sensitivity` times the standard deviation of that bin over
    all frames.

    Parameters
    ----------
    X : [C x K x Nf] np.ndarray (complex)
        Frame-frequency signal.
    sensitivity : float
        Sensitivity of the VAD threshold.
    ref : int
        Reference channel index.

    Returns
    -------
    vad : [K x Nf] np.ndarray (bool)
        VAD flags.
    """
    Xref = X[ref, :, :]
    thrs = sensitivity * np.std(Xref, axis=0, ddof=1)
    return np.abs(Xref) > thrs[np.newaxis, :]


def vad_td(x, sensitivity):
    """Time-domain, per-channel voice activity detection
    (`|x| > sensitivity * std(x)`). Returns a [T x C] boolean array."""
    if x.ndim == 1:
        x = x[:, np.newaxis]
    thrs = sensitivity * np.std(x, axis=0, ddof=1)
    return np.abs(x) > thrs[np.newaxis, :]


def apply_fir(x, w):
    """
    Multichannel FIR filtering, truncated to the input length:
    `y[t] = sum_c sum_i w[i, c] * x[t - i, c]`.

    Parameters
    ----------
    x : [T x C] np.ndarray (float)
        Input signals.
    w : [Lw x C] np.ndarray (float)
        Filters, one per input channel.

    Returns
    -------
    y : [T x 1] np.ndarray (float)
        Filtered signal (summed over channels).
    """
    return apply_fir_segment(x, w, 0, x.shape[0])


def apply_fir_segment(x, w, start, stop):
    """Same as `apply_fir()`, but only computes output samples
    `start <= t < stop` (with the full input history)."""
    if x.shape[1] != w.shape[1]:
        raise ValueError(f'Number of input channels ({x.shape[1]}) and filters ({w.shape[1]}) do not match.')
    if stop <= start:
        return np.zeros(0)
    lo = max(start - w.shape[0] + 1, 0)
    y = sig.fftconvolve(x[lo:stop, :], w, axes=0)
    return y[start - lo:stop - lo, :].sum(axis=1)


def apply_held_filters(x, w, updateIdx, initFilter):
    """
    Applies a sequence of FIR filters, each held from its update instant
    until the next one.

    Parameters
    ----------
    x : [T x C] np.ndarray (float)
        Input signals.
    w : [Lw x C x K] np.ndarray (float)
        Filters, `w[:, :, k]` being valid from sample `updateIdx[k]` on.
    updateIdx : [K x 1] np.ndarray (int)
        Sample indices of the filter updates (increasing).
    initFilter : [Lw0 x C] np.ndarray (float)
        Filter used before the first update.

    Returns
    -------
    y : [T x 1] np.ndarray (float)
        Filtered signal.
    """
    T = x.shape[0]
    y = np.zeros(T)
    bounds = np.concatenate(([0], updateIdx, [T])).astype(int)
    bounds = np.clip(bounds, 0, T)
    for k in range(len(bounds) - 1):
        start, stop = bounds[k], bounds[k + 1]
        if stop <= start:
            continue
        currFilter = initFilter if k == 0 else w[:, :, k - 1]
        y[start:stop] = apply_fir_segment(x, currFilter, start, stop)
    return y


def filter_update_instants(nFrames, N, shift):
    """Sample indices at which the adaptive NR filters become available
    (end of each analysis frame)."""
    return np.arange(nFrames) * shift + N - 1


@njit
def apply_time_varying_fir(x, f):
    """
    Applies a sample-wise time-varying multichannel FIR filter.

    Parameters
    ----------
    x : [T x L] np.ndarray (float)
        Input signals.
    f : [Lf x L x M x T] np.ndarray (float)
        Filters at each sample.

    Returns
    -------
    y : [T x M] np.ndarray (float)
        Filtered signals.
    """
    T = x.shape[0]
    Lf, L, M = f.shape[0], f.shape[1], f.shape[2]
    y = np.zeros((T, M))
    for t in range(T):
        for m in range(M):
            acc = 0.
            for l in range(L):
                for i in range(min(Lf, t + 1)):
                    acc += f[i, l, m, t] * x[t - i, l]
            y[t, m] = acc
    return y


def check_finite(x, name):
    """Raises an error if `x` contains NaN or infinite values."""
    if not np.all(np.isfinite(x)):
        raise ValueError(f'Non-finite values found in the {name}.')


def warn_rank_clamps(nClamped, nTotal, requested, context=''):
    """Aggregated warning for GEVD rank clamps."""
    if nClamped > 0:
        warnings.warn(
            f'{context}Requested rank ({requested}) not attainable in {nClamped}/{nTotal} bin(s): clamped to the number of positive generalized eigenvalue differences.',
            UserWarning
        )
