# tests/test_distortion.py
import pytest
import numpy as np
import scipy.signal as sig
import nraec_toolbox.n_base as base


def test_identity_filter_is_pure_delay():
    """A unit frequency response becomes a unit tap at N - 1."""
    N, S = 64, 32
    win = base.get_window('sqrthann', N, S)
    w = base.dist_fct_approx(np.ones(N // 2 + 1), win, win, S)
    expected = np.zeros(2 * N - 1)
    expected[N - 1] = 1
    assert w.shape == (2 * N - 1, 1)
    np.testing.assert_allclose(w[:, 0], expected, atol=1e-12)


def test_matches_wola_filtering(rng):
    """Time-domain filtering with the distortion function reproduces
    frequency-domain filtering in the WOLA domain, N - 1 samples later."""
    N, S = 128, 64
    win = base.get_window('sqrthann', N, S)
    b = rng.normal(size=4)
    W = np.fft.rfft(b, N).conj()    # applied as `W^H y`
    x = rng.normal(size=4096)

    X = base.wola_analysis(x, win, N, S)
    yWola = base.wola_synthesis(X * W.conj()[np.newaxis, np.newaxis, :], win, N, S)[:, 0]
    wTD = base.dist_fct_approx(W, win, win, S)[:, 0]
    yTD = sig.lfilter(wTD, 1, x)

    # Interior samples only (covered by two frames)
    idx = np.arange(2 * N, len(yWola) - N)
    err = yTD[idx] - yWola[idx - (N - 1)]
    assert np.linalg.norm(err) / np.linalg.norm(yWola[idx - (N - 1)]) < 1e-2


def test_row_mismatch_raises():
    win = base.get_window('sqrthann', 64, 32)
    with pytest.raises(ValueError):
        base.dist_fct_approx(np.ones((20, 2)), win, win, 32)


def test_filter_stack_shapes(rng):
    N, S, C, K = 32, 16, 3, 4
    win = base.get_window('sqrthann', N, S)
    W = rng.normal(size=(C, C, N // 2 + 1)) + 1j * rng.normal(size=(C, C, N // 2 + 1))
    assert base.stft_filters_to_td(W, win, win, S).shape == (2 * N - 1, C, C)
    W = rng.normal(size=(C, C, K, N // 2 + 1)) + 0j
    assert base.stft_filters_to_td(W, win, win, S).shape == (2 * N - 1, C, C, K)


def test_filter_stack_column_is_output_channel():
    """Identity filter stacks map each input channel to itself."""
    N, S, C = 32, 16, 2
    win = base.get_window('sqrthann', N, S)
    W = np.tile(np.eye(C)[:, :, np.newaxis], (1, 1, N // 2 + 1)).astype(complex)
    w = base.stft_filters_to_td(W, win, win, S)
    np.testing.assert_allclose(w[N - 1, :, :], np.eye(C), atol=1e-12)
    np.testing.assert_allclose(np.delete(w, N - 1, axis=0), 0, atol=1e-12)


def test_non_finite_filters_raise():
    N, S = 32, 16
    win = base.get_window('sqrthann', N, S)
    W = np.zeros((1, 1, N // 2 + 1), dtype=complex)
    W[0, 0, 3] = np.nan
    with pytest.raises(ValueError):
        base.stft_filters_to_td(W, win, win, S)
