# Noise-reduction (NR) filter estimators: VAD-gated correlation matrix
# estimation and GEVD-based rank-constrained MWF design, for the base NR
# (microphones only) and the extended NR (NRext: microphones and
# loudspeakers filtered jointly), in batch and adaptive mode.

import warnings
import numpy as np
import nraec_toolbox.n_base as base
import nraec_toolbox.n_mwf as mwf
from nraec_toolbox.n_classes import SignalBundle, NRoutputs


class CorrelationAccumulator:
    """
    Running-sum estimate of the per-bin correlation matrices
    `E{y y^H}` over a (gated) subset of frames.
    """
    def __init__(self, nFreqs, nChannels, regularization=0.):
        self.sums = np.zeros((nFreqs, nChannels, nChannels), dtype=complex)
        self.counts = np.zeros(nFreqs, dtype=int)
        self.regularization = regularization

    def add(self, Y, mask):
        """
        Adds the outer products of the gated frames.

        Parameters
        ----------
        Y : [C x K x Nf] np.ndarray (complex)
            Frame-frequency signals.
        mask : [K x Nf] np.ndarray (bool)
            Frames to include, per bin.
        """
        self.sums += np.einsum(
            'ikf,jkf,kf->fij', Y, Y.conj(), mask.astype(float)
        )
        self.counts += np.sum(mask, axis=0)

    def mean(self, name=''):
        """Regularized sample averages. Bins without any frame only
        contain the regularization term."""
        nChannels = self.sums.shape[-1]
        unvisited = self.counts == 0
        if np.any(unvisited):
            warnings.warn(
                f'No frame available for the {name} correlation matrix in {np.sum(unvisited)}/{len(self.counts)} bin(s) (bins {np.flatnonzero(unvisited).tolist()}): using the regularization term only.',
                UserWarning
            )
        R = np.zeros_like(self.sums)
        visited = ~unvisited
        R[visited] = self.sums[visited] /\
            self.counts[visited][:, np.newaxis, np.newaxis]
        R += self.regularization * np.eye(nChannels)[np.newaxis, :, :]
        return R


def init_covmats(nFreqs, nChannels, scaling):
    """Initial correlation matrices: scaled identity matrices."""
    return np.tile(
        scaling * np.eye(nChannels, dtype=complex), (nFreqs, 1, 1)
    )


def update_covmats_online(Rxx, Rnn, y, maskTarget, maskInterf, beta):
    """
    Exponential averaging of the correlation matrices for one frame,
    VAD-gated per bin.

    Parameters
    ----------
    Rxx : [Nf x C x C] np.ndarray (complex)
        Current target-plus-interference correlation matrices.
    Rnn : [Nf x C x C] np.ndarray (complex)
        Current interference-only correlation matrices.
    y : [C x Nf] np.ndarray (complex)
        Current frame.
    maskTarget : [Nf x 1] np.ndarray (bool)
        Bins where `Rxx` is updated.
    maskInterf : [Nf x 1] np.ndarray (bool)
        Bins where `Rnn` is updated.
    beta : float
        Exponential averaging constant.

    Returns
    -------
    Rxx, Rnn : [Nf x C x C] np.ndarray (complex)
        Updated correlation matrices.
    """
    yyH = np.einsum('if,jf->fij', y, y.conj())
    Rxx[maskTarget] = beta * Rxx[maskTarget] + (1 - beta) * yyH[maskTarget]
    Rnn[maskInterf] = beta * Rnn[maskInterf] + (1 - beta) * yyH[maskInterf]
    return Rxx, Rnn


def get_nr_inputs(sig: SignalBundle, p: base.NRAECparameters, extended):
    """
    Computes the frame-frequency input signals and VAD masks of the
    (extended) NR.

    Returns
    -------
    Y : [C x K x Nf] np.ndarray (complex)
        Microphone signals (stacked with the loudspeaker signals if
        `extended`).
    maskTarget : [K x Nf] np.ndarray (bool)
        Frames used for the target-plus-interference correlation matrices.
    maskInterf : [K x Nf] np.ndarray (bool)
        Frames used for the interference-only correlation matrices.
    rank : int
        Requested GEVD rank.
    """
    p.check_dimensions(sig.nMics, sig.nLoudspeakers)
    win, N, R = p.winAnalysis, p.DFTsize, p.frameShift
    if extended:
        y = np.concatenate((sig.m, sig.l), axis=1)
    else:
        y = sig.m
    Y = base.wola_analysis(y, win, N, R)
    vadS = base.vad_stft(
        base.wola_analysis(sig.s, win, N, R), p.vadSensitivity, p.ref
    )
    if extended:
        # Far-end speech activity in the echo
        vadES = base.vad_stft(
            base.wola_analysis(sig.es, win, N, R), p.vadSensitivity, p.ref
        )
        # Frames with either source active alone are not used
        maskTarget = vadS & vadES
        maskInterf = ~vadS & ~vadES
        rank = p.get_rank_ses(sig.nLoudspeakers)
    else:
        maskTarget = vadS
        maskInterf = ~vadS
        rank = p.rankS
    return Y, maskTarget, maskInterf, rank


def print_rank_clamps(out: NRoutputs, p: base.NRAECparameters, mode=''):
    """Prints the number of (frame-)bins where the requested rank was
    not attained."""
    if p.printouts.show_rank_clamps() and out.nRankClamps > 0:
        units = 'frame-bins' if out.rankEff.ndim == 2 else 'bins'
        print(f'{mode} {"NRext" if out.extended else "NR"}: rank clamped in {out.nRankClamps}/{out.rankEff.size} {units}.')


def compute_nr_batch(sig: SignalBundle, p: base.NRAECparameters, extended):
    """Batch NR(ext) filter estimation. See `compute_nr()`."""
    Y, maskTarget, maskInterf, rank = get_nr_inputs(sig, p, extended)
    nChannels, nFreqs = Y.shape[0], Y.shape[-1]

    accTarget = CorrelationAccumulator(
        nFreqs, nChannels, p.covMatRegularization
    )
    accInterf = CorrelationAccumulator(
        nFreqs, nChannels, p.covMatRegularization
    )
    accTarget.add(Y, maskTarget)
    accInterf.add(Y, maskInterf)
    Rxx = accTarget.mean('target-plus-interference')
    Rnn = accInterf.mean('interference-only')

    W, rankEff, _ = mwf.update_mwf_gevd_multichannel(Rxx, Rnn, rank)
    base.check_finite(W, 'NR filters')

    out = NRoutputs(
        W=np.transpose(W, axes=[1, 2, 0]),
        Rxx=Rxx,
        Rnn=Rnn,
        vadTarget=maskTarget,
        vadInterf=maskInterf,
        rankRequested=rank,
        rankEff=rankEff,
        extended=extended,
    )
    print_rank_clamps(out, p, 'Batch')
    return out


def compute_nr_online(sig: SignalBundle, p: base.NRAECparameters, extended):
    """Adaptive NR(ext) filter estimation. See `compute_nr_adaptive()`."""
    Y, maskTarget, maskInterf, rank = get_nr_inputs(sig, p, extended)
    nChannels, nFrames, nFreqs = Y.shape

    Rxx = init_covmats(nFreqs, nChannels, p.covMatRegularization)
    Rnn = init_covmats(nFreqs, nChannels, p.covMatRegularization)
    W = np.zeros((nChannels, nChannels, nFrames, nFreqs), dtype=complex)
    rankEff = np.zeros((nFrames, nFreqs), dtype=int)
    nClamped = 0
    for k in range(nFrames):
        Rxx, Rnn = update_covmats_online(
            Rxx, Rnn, Y[:, k, :], maskTarget[k, :], maskInterf[k, :],
            beta=p.forgettingFactor
        )
        Wcurr, rankEff[k, :], clamped = mwf.update_mwf_gevd_multichannel(
            Rxx, Rnn, rank, warn=False
        )
        W[:, :, k, :] = np.transpose(Wcurr, axes=[1, 2, 0])
        nClamped += int(np.sum(clamped))

    base.warn_rank_clamps(
        nClamped, nFrames * nFreqs, rank, context='Adaptive NR: '
    )
    base.check_finite(W, 'NR filters')

    out = NRoutputs(
        W=W,
        Rxx=Rxx,
        Rnn=Rnn,
        vadTarget=maskTarget,
        vadInterf=maskInterf,
        rankRequested=rank,
        rankEff=rankEff,
        extended=extended,
    )
    print_rank_clamps(out, p, 'Adaptive')
    return out


def compute_nr(sig: SignalBundle, p: base.NRAECparameters) -> NRoutputs:
    """
    Batch NR filter estimation: correlation matrices averaged over all
    frames (desired-speech-active frames for the microphone correlation,
    inactive frames for the noise correlation), then GEVD-based MWF with
    rank `p.rankS`.

    Parameters
    ----------
    sig : SignalBundle object
        Microphone and loudspeaker signals.
    p : NRAECparameters object
        Parameters.

    Returns
    -------
    out : NRoutputs object
        `out.W` is [M x M x Nf].
    """
    return compute_nr_batch(sig, p, extended=False)


def compute_nr_adaptive(sig: SignalBundle, p: base.NRAECparameters) -> NRoutputs:
    """
    Adaptive NR filter estimation: correlation matrices exponentially
    averaged (factor `p.forgettingFactor`) and filters re-computed at
    every frame. `out.W` is [M x M x K x Nf].
    """
    return compute_nr_online(sig, p, extended=False)


def compute_nrext(sig: SignalBundle, p: base.NRAECparameters) -> NRoutputs:
    """
    Batch extended NR filter estimation, on the stacked microphone and
    loudspeaker signals. The target correlation uses frames where both the
    desired speech and the far-end speech in the echo are active; the
    interference correlation uses frames where neither is. The GEVD rank
    is `L + 1` unless `p.rankSES` is set. `out.W` is [(M+L) x (M+L) x Nf].
    """
    return compute_nr_batch(sig, p, extended=True)


def compute_nrext_adaptive(sig: SignalBundle, p: base.NRAECparameters) -> NRoutputs:
    """Adaptive version of `compute_nrext()`.
    `out.W` is [(M+L) x (M+L) x K x Nf]."""
    return compute_nr_online(sig, p, extended=True)
