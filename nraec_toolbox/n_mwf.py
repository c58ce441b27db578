# Generalized eigenvalue decomposition (GEVD)-based, rank-constrained
# multichannel Wiener filter (MWF) design.
#
# References
# ----------
# [1] R. Serizel, M. Moonen, B. Van Dijk and J. Wouters, "Low-rank
# Approximation Based Multichannel Wiener Filter Algorithms for Noise
# Reduction with Application in Cochlear Implants," IEEE/ACM Transactions
# on Audio, Speech, and Language Processing, vol. 22, no. 4, pp. 785-799,
# April 2014.

import numpy as np
import scipy.linalg as sla
from dataclasses import dataclass
from nraec_toolbox.n_base import warn_rank_clamps


@dataclass
class GEVDoutputs:
    """Per-bin results of the GEVD-based filter design."""
    V: np.ndarray = None    # generalized eigenvectors (sorted)
    Q: np.ndarray = None    # inverse of the Hermitian transpose of `V`
    Lxx: np.ndarray = None  # diagonal of V^H Rxx V (real, sorted)
    Lnn: np.ndarray = None  # diagonal of V^H Rnn V (real, sorted)
    R: np.ndarray = None    # low-rank estimate of the target correlation
    D: np.ndarray = None    # diagonal MWF gains
    W: np.ndarray = None    # MWF, `d_c = W[:, c]^H y`
    rankEff: int = 0        # rank actually used in `W`
    rankClamped: bool = False   # True if the requested rank was reduced


def make_hermitian(R):
    """Enforces Hermitian symmetry: real diagonal, upper triangle
    mirrored onto the lower triangle."""
    upper = np.triu(R, 1)
    out = upper + upper.conj().swapaxes(-1, -2)
    idx = np.arange(R.shape[-1])
    out[..., idx, idx] = R[..., idx, idx].real
    return out


def gevd(Rxx, Rnn):
    """
    Generalized eigenvectors of the pair (Rxx, Rnn), sorted by descending
    ratio of the diagonalized matrices.

    Parameters
    ----------
    Rxx : [C x C] np.ndarray (complex)
        Target-plus-interference correlation matrix.
    Rnn : [C x C] np.ndarray (complex)
        Interference-only correlation matrix.

    Returns
    -------
    V : [C x C] np.ndarray (complex)
        Generalized eigenvectors.
    l1 : [C x 1] np.ndarray (float)
        `real(diag(V^H Rxx V))`.
    l2 : [C x 1] np.ndarray (float)
        `real(diag(V^H Rnn V))`.
    """
    try:
        _, V = sla.eigh(Rxx, Rnn)
    except np.linalg.LinAlgError:
        # `Rnn` not positive definite: QZ algorithm
        _, V = sla.eig(Rxx, Rnn)
    l1 = np.real(np.einsum('ji,jk,ki->i', V.conj(), Rxx, V))
    l2 = np.real(np.einsum('ji,jk,ki->i', V.conj(), Rnn, V))

    # Sort by descending ratio, non-finite ratios last
    with np.errstate(divide='ignore', invalid='ignore'):
        ratio = l1 / l2
    finite = np.isfinite(ratio)
    idxFinite = np.flatnonzero(finite)
    idx = np.concatenate((
        idxFinite[np.argsort(-ratio[finite], kind='stable')],
        np.flatnonzero(~finite)
    ))
    V, l1, l2, ratio = V[:, idx], l1[idx], l2[idx], ratio[idx]

    # Spurious positive ratios from two negative values go last
    spurious = (ratio > 0) & (l1 < 0) & (l2 < 0)
    idx = np.concatenate((np.flatnonzero(~spurious), np.flatnonzero(spurious)))
    return V[:, idx], l1[idx], l2[idx]


def update_difference_correlation(Rxx, Rnn, rank=None):
    """
    GEVD-based low-rank estimate of the target correlation matrix
    `Rxx - Rnn`.

    Parameters
    ----------
    Rxx : [C x C] np.ndarray (complex)
        Target-plus-interference correlation matrix.
    Rnn : [C x C] np.ndarray (complex)
        Interference-only correlation matrix.
    rank : int or None
        Requested rank. If None, all positive eigenvalue differences are
        kept.

    Returns
    -------
    out : GEVDoutputs object
        Decomposition and low-rank estimate `out.R` (`out.W` not set).
    """
    Rxx = make_hermitian(np.asarray(Rxx, dtype=complex))
    Rnn = make_hermitian(np.asarray(Rnn, dtype=complex))
    if Rxx.shape != Rnn.shape or Rxx.shape[0] != Rxx.shape[1]:
        raise ValueError(f'Correlation matrices must be square and of equal dimensions (got {Rxx.shape} and {Rnn.shape}).')

    V, l1, l2 = gevd(Rxx, Rnn)
    Q = np.linalg.inv(V.conj().T)

    ldiff = np.maximum(l1 - l2, 0)
    nPositive = int(np.sum(ldiff > 0))
    rankClamped = False
    if rank is not None:
        if rank > nPositive:
            rankClamped = True
        ldiff[int(rank):] = 0
    R = make_hermitian((Q * ldiff[np.newaxis, :]) @ Q.conj().T)

    return GEVDoutputs(
        V=V, Q=Q, Lxx=l1, Lnn=l2, R=R,
        rankEff=min(nPositive, rank) if rank is not None else nPositive,
        rankClamped=rankClamped,
    )


def update_mwf_gevd(Rxx, Rnn, rank=None):
    """
    GEVD-based rank-constrained MWF [1] for one frequency bin.

    Parameters
    ----------
    Rxx : [C x C] np.ndarray (complex)
        Target-plus-interference correlation matrix.
    Rnn : [C x C] np.ndarray (complex)
        Interference-only correlation matrix.
    rank : int or None
        Requested rank of the target correlation matrix.

    Returns
    -------
    out : GEVDoutputs object
        Filter `out.W` and decomposition.
    """
    out = update_difference_correlation(Rxx, Rnn, rank)
    n = out.V.shape[0]
    E = np.linalg.matrix_rank(out.R, hermitian=True)
    if rank is not None:
        E = min(E, int(rank))

    D = np.zeros(n)
    with np.errstate(divide='ignore', invalid='ignore'):
        D[:E] = (out.Lxx[:E] - out.Lnn[:E]) / out.Lxx[:E]
    out.D = D
    out.W = (out.V * D[np.newaxis, :]) @ out.Q.conj().T
    out.rankEff = int(E)
    return out


def update_mwf_gevd_multichannel(Rxx, Rnn, rank=None, warn=True):
    """
    Batched GEVD-based MWF: applies `update_mwf_gevd()` independently to
    each frequency bin.

    Parameters
    ----------
    Rxx : [Nf x C x C] np.ndarray (complex)
        Target-plus-interference correlation matrices.
    Rnn : [Nf x C x C] np.ndarray (complex)
        Interference-only correlation matrices.
    rank : int, [Nf x 1] np.ndarray (int), or None
        Requested rank, common to all bins or per bin.
    warn : bool
        If True, warn (once) if the requested rank had to be clamped in
        some bins.

    Returns
    -------
    W : [Nf x C x C] np.ndarray (complex)
        Filters.
    rankEff : [Nf x 1] np.ndarray (int)
        Rank used in each bin.
    rankClamped : [Nf x 1] np.ndarray (bool)
        True in bins where the requested rank was not attainable.
    """
    nFreqs, n = Rxx.shape[0], Rxx.shape[-1]
    if Rnn.shape != Rxx.shape:
        raise ValueError(f'Correlation matrix stacks must have equal dimensions (got {Rxx.shape} and {Rnn.shape}).')
    if rank is None or np.isscalar(rank):
        rank = [rank] * nFreqs
    elif len(rank) != nFreqs:
        raise ValueError(f'One rank per frequency bin is required ({len(rank)} provided for {nFreqs} bins).')

    W = np.zeros((nFreqs, n, n), dtype=complex)
    rankEff = np.zeros(nFreqs, dtype=int)
    rankClamped = np.zeros(nFreqs, dtype=bool)
    for kappa in range(nFreqs):
        out = update_mwf_gevd(Rxx[kappa, :, :], Rnn[kappa, :, :], rank[kappa])
        W[kappa, :, :] = out.W
        rankEff[kappa] = out.rankEff
        rankClamped[kappa] = out.rankClamped

    if warn:
        warn_rank_clamps(
            int(np.sum(rankClamped)), nFreqs, max(r or 0 for r in rank)
        )
    return W, rankEff, rankClamped
