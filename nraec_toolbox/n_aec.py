# Acoustic echo cancellation (AEC): normalized least-mean-squares (NLMS)
# estimation of the echo paths from the loudspeakers to the microphones,
# in batch and adaptive mode.

import numpy as np
from numba import njit
import nraec_toolbox.n_base as base
from nraec_toolbox.n_classes import SignalBundle, AECoutputs


def get_update_flags(sig: SignalBundle, p: base.NRAECparameters, echoGating):
    """
    Sample-wise NLMS update flags: no desired speech activity and, if
    `echoGating`, echo activity.

    Returns
    -------
    flags : [T x M] np.ndarray (bool)
        Update flags, per microphone.
    """
    flags = ~base.vad_td(sig.s, p.vadSensitivity)
    if echoGating:
        flags &= base.vad_td(sig.e, p.vadSensitivity)
    return flags


def center_echo_paths(fhat):
    """Removes the mean of the echo-path estimates along their first
    (filter taps) axis, per loudspeaker and microphone."""
    return fhat - np.mean(fhat, axis=0, keepdims=True)


def check_aec_inputs(sig: SignalBundle, p: base.NRAECparameters):
    p.check_dimensions(sig.nMics, sig.nLoudspeakers)
    if p.Lfhat > sig.nSamples:
        raise ValueError(f'The AEC filter length ({p.Lfhat}) exceeds the signal length ({sig.nSamples}).')


def compute_aec(sig: SignalBundle, p: base.NRAECparameters) -> AECoutputs:
    """
    Batch NLMS echo-path estimation. One pass over the samples per
    microphone, starting from a zero filter; the filter is updated at
    every sample with a full loudspeaker history where the desired speech
    is inactive (and, if `p.aecBatchEchoGating`, where the echo is
    active). The final estimates are mean-centered.

    Parameters
    ----------
    sig : SignalBundle object
        Microphone and loudspeaker signals (typically, noise-reduction
        outputs).
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    out : AECoutputs object
        `out.fhat` is [Lfhat x L x M].
    """
    check_aec_inputs(sig, p)
    flags = get_update_flags(sig, p, p.aecBatchEchoGating)
    f, nUpdates = nlms_batch(
        np.ascontiguousarray(sig.m),
        np.ascontiguousarray(sig.l),
        flags,
        p.Lfhat, p.mu, p.alpha
    )
    fhat = center_echo_paths(f)
    base.check_finite(fhat, 'AEC filters')
    return AECoutputs(fhat=fhat, vadUpdate=flags, nUpdates=nUpdates)


def compute_aec_adaptive(sig: SignalBundle, p: base.NRAECparameters) -> AECoutputs:
    """
    Adaptive NLMS echo-path estimation. The filter is recorded at every
    sample: `fhat[..., t]` is estimated from samples `0, ..., t-1`
    (`fhat[..., 0] == 0`). Updates require no desired speech activity and
    echo activity; the loudspeaker history is zero-padded before the
    first sample. Each estimate is mean-centered.

    Returns
    -------
    out : AECoutputs object
        `out.fhat` is [Lfhat x L x M x T].
    """
    check_aec_inputs(sig, p)
    flags = get_update_flags(sig, p, echoGating=True)
    fTraj, nUpdates = nlms_adaptive(
        np.ascontiguousarray(sig.m),
        np.ascontiguousarray(sig.l),
        flags,
        p.Lfhat, p.mu, p.alpha
    )
    fhat = np.transpose(fTraj, axes=[3, 2, 1, 0])
    base.check_finite(fhat, 'AEC filters')
    return AECoutputs(fhat=fhat, vadUpdate=flags, nUpdates=nUpdates)


# --------------------------------------------------------------------------- #
# Jitted functions
# --------------------------------------------------------------------------- #

@njit
def fill_history(lbar, l, t, Lf):
    """Unrolled loudspeaker history `[l_1[t], ..., l_1[t-Lf+1], l_2[t],
    ...]` (zero before the first sample)."""
    L = l.shape[1]
    for ll in range(L):
        for i in range(Lf):
            if t - i >= 0:
                lbar[ll * Lf + i] = l[t - i, ll]
            else:
                lbar[ll * Lf + i] = 0.


@njit
def nlms_step(f, lbar, target, mu, alpha):
    """One NLMS update of `f` (in place)."""
    err = target
    energy = 0.
    for i in range(len(f)):
        err -= f[i] * lbar[i]
        energy += lbar[i] * lbar[i]
    stepSize = mu / (alpha + energy)
    for i in range(len(f)):
        f[i] += stepSize * lbar[i] * err


@njit
def center_blocks(f, L, Lf):
    """Mean removal per loudspeaker block of an unrolled filter
    (in place)."""
    for ll in range(L):
        avg = 0.
        for i in range(Lf):
            avg += f[ll * Lf + i]
        avg /= Lf
        for i in range(Lf):
            f[ll * Lf + i] -= avg


@njit
def nlms_batch(m, l, flags, Lf, mu, alpha):
    """
    Batch NLMS, one pass per microphone.

    Returns
    -------
    fhat : [Lf x L x M] np.ndarray (float)
        Final filters (not centered).
    nUpdates : [M x 1] np.ndarray (int)
        Number of updates per microphone.
    """
    T, M = m.shape
    L = l.shape[1]
    fhat = np.zeros((Lf, L, M))
    nUpdates = np.zeros(M, dtype=np.int64)
    lbar = np.zeros(Lf * L)
    for mm in range(M):
        f = np.zeros(Lf * L)
        for t in range(Lf - 1, T):
            if flags[t, mm]:
                fill_history(lbar, l, t, Lf)
                nlms_step(f, lbar, m[t, mm], mu, alpha)
                nUpdates[mm] += 1
        for ll in range(L):
            for i in range(Lf):
                fhat[i, ll, mm] = f[ll * Lf + i]
    return fhat, nUpdates


@njit
def nlms_adaptive(m, l, flags, Lf, mu, alpha):
    """
    Adaptive NLMS, recording the (centered) filter at every sample.

    Returns
    -------
    fTraj : [T x M x L x Lf] np.ndarray (float)
        Filters at each sample.
    nUpdates : [M x 1] np.ndarray (int)
        Number of updates per microphone.
    """
    T, M = m.shape
    L = l.shape[1]
    fTraj = np.zeros((T, M, L, Lf))
    nUpdates = np.zeros(M, dtype=np.int64)
    lbar = np.zeros(Lf * L)
    for mm in range(M):
        f = np.zeros(Lf * L)
        for t in range(T - 1):
            if flags[t, mm]:
                fill_history(lbar, l, t, Lf)
                nlms_step(f, lbar, m[t, mm], mu, alpha)
                nUpdates[mm] += 1
            center_blocks(f, L, Lf)
            for ll in range(L):
                for i in range(Lf):
                    fTraj[t + 1, mm, ll, i] = f[ll * Lf + i]
    return fTraj, nUpdates
