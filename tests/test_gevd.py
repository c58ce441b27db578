# tests/test_gevd.py
import pytest
import warnings
import numpy as np
import nraec_toolbox.n_mwf as mwf


def random_pd(rng, n):
    """Random Hermitian positive-definite matrix."""
    A = rng.normal(size=(n, n)) + 1j * rng.normal(size=(n, n))
    return A @ A.conj().T + n * np.eye(n)


def rank_one_pair(rng, n=3, power=4.):
    Rnn = random_pd(rng, n)
    a = rng.normal(size=n) + 1j * rng.normal(size=n)
    Rss = power * np.outer(a, a.conj())
    return Rnn + Rss, Rnn, Rss


def test_rank_one_target_is_recovered(rng):
    Rxx, Rnn, Rss = rank_one_pair(rng)
    out = mwf.update_difference_correlation(Rxx, Rnn, rank=1)
    np.testing.assert_allclose(out.R, Rss, atol=1e-8 * np.abs(Rss).max())
    assert out.rankEff == 1
    assert not out.rankClamped


def test_rank_one_filter_is_mwf(rng):
    """For an exactly rank-1 target, the GEVD-based filter equals
    `Rxx^{-1} (Rxx - Rnn)`."""
    Rxx, Rnn, Rss = rank_one_pair(rng)
    out = mwf.update_mwf_gevd(Rxx, Rnn, rank=1)
    np.testing.assert_allclose(out.W, np.linalg.solve(Rxx, Rss), atol=1e-8)
    assert out.rankEff == 1


def test_rank_zero_gives_zero_filter(rng):
    Rxx, Rnn, _ = rank_one_pair(rng)
    out = mwf.update_mwf_gevd(Rxx, Rnn, rank=0)
    assert np.all(out.W == 0)
    assert out.rankEff == 0


def test_equal_matrices_give_negligible_filter(rng):
    Rnn = random_pd(rng, 3)
    out = mwf.update_mwf_gevd(Rnn, Rnn.copy(), rank=1)
    np.testing.assert_allclose(out.W, 0, atol=1e-8)


def test_equal_matrices_full_rank_gives_zero_filter(rng):
    """`Rxx == Rnn` with all eigenvalue differences kept (rank None) or
    with the full rank requested: no positive difference, zero filter."""
    Rnn = np.stack([random_pd(rng, 3) for _ in range(4)])
    with warnings.catch_warnings():
        warnings.simplefilter('error')
        W, rankEff, clamped = mwf.update_mwf_gevd_multichannel(
            Rnn, Rnn.copy(), rank=None
        )
    np.testing.assert_allclose(W, 0, atol=1e-8)
    assert np.all(rankEff == 0)
    assert not np.any(clamped)

    with pytest.warns(UserWarning, match='clamped'):
        W, rankEff, clamped = mwf.update_mwf_gevd_multichannel(
            Rnn, Rnn.copy(), rank=3
        )
    np.testing.assert_allclose(W, 0, atol=1e-8)
    assert np.all(rankEff == 0)
    assert np.all(clamped)


def test_unattainable_rank_is_clamped_with_warning(rng):
    """No positive eigenvalue difference: the rank is clamped to zero,
    with a single aggregated warning."""
    Rnn = np.stack([random_pd(rng, 3) for _ in range(5)])
    with pytest.warns(UserWarning, match='clamped'):
        W, rankEff, clamped = mwf.update_mwf_gevd_multichannel(
            0.5 * Rnn, Rnn, rank=1
        )
    assert W.shape == (5, 3, 3)
    assert np.all(W == 0)
    assert np.all(rankEff == 0)
    assert np.all(clamped)


def test_per_bin_ranks(rng):
    pairs = [rank_one_pair(rng) for _ in range(4)]
    Rxx = np.stack([p[0] for p in pairs])
    Rnn = np.stack([p[1] for p in pairs])
    W, rankEff, _ = mwf.update_mwf_gevd_multichannel(
        Rxx, Rnn, rank=np.array([0, 1, 0, 1])
    )
    np.testing.assert_array_equal(rankEff, [0, 1, 0, 1])
    assert np.all(W[0] == 0) and np.any(W[1] != 0)
    with pytest.raises(ValueError):
        mwf.update_mwf_gevd_multichannel(Rxx, Rnn, rank=[1, 1])


def test_make_hermitian(rng):
    R = rng.normal(size=(4, 4)) + 1j * rng.normal(size=(4, 4))
    H = mwf.make_hermitian(R)
    np.testing.assert_allclose(H, H.conj().T)
    np.testing.assert_allclose(np.triu(H, 1), np.triu(R, 1))
    np.testing.assert_allclose(np.diag(H), np.diag(R).real)


def test_low_rank_estimate_is_hermitian(rng):
    Rxx = random_pd(rng, 4) + random_pd(rng, 4)
    Rnn = random_pd(rng, 4)
    out = mwf.update_difference_correlation(Rxx, Rnn, rank=2)
    np.testing.assert_allclose(out.R, out.R.conj().T)
    assert out.rankEff <= 2
