# tests/test_nr.py
import pytest
import numpy as np
import nraec_toolbox.n_nr as nr
from nraec_toolbox.n_base import NRAECparameters, PrintoutsParameters

QUIET = PrintoutsParameters(verbose=False)


def test_accumulator_averages_gated_frames(rng):
    Y = rng.normal(size=(2, 10, 3)) + 1j * rng.normal(size=(2, 10, 3))
    mask = np.zeros((10, 3), dtype=bool)
    mask[:4, :] = True
    acc = nr.CorrelationAccumulator(3, 2, regularization=0.)
    acc.add(Y, mask)
    R = acc.mean('test')
    expected = Y[:, :4, 1] @ Y[:, :4, 1].conj().T / 4
    np.testing.assert_allclose(R[1], expected)


def test_accumulator_warns_on_unvisited_bins(rng):
    Y = rng.normal(size=(2, 10, 3)) + 0j
    mask = np.ones((10, 3), dtype=bool)
    mask[:, 0] = False
    acc = nr.CorrelationAccumulator(3, 2, regularization=1e-3)
    acc.add(Y, mask)
    with pytest.warns(UserWarning, match='1/3 bin'):
        R = acc.mean('noise')
    np.testing.assert_allclose(R[0], 1e-3 * np.eye(2))


def test_online_update_only_touches_gated_bins(rng):
    Rxx = nr.init_covmats(4, 2, 1.)
    Rnn = nr.init_covmats(4, 2, 1.)
    y = rng.normal(size=(2, 4)) + 0j
    maskT = np.array([True, False, True, False])
    Rxx, Rnn = nr.update_covmats_online(Rxx, Rnn, y, maskT, ~maskT, beta=0.9)
    np.testing.assert_allclose(
        Rxx[0], 0.9 * np.eye(2) + 0.1 * np.outer(y[:, 0], y[:, 0].conj())
    )
    np.testing.assert_allclose(Rxx[1], np.eye(2))
    np.testing.assert_allclose(Rnn[0], np.eye(2))


def test_batch_nr_shapes(scenario):
    sig, _, _ = scenario
    p = NRAECparameters(printouts=QUIET)
    out = nr.compute_nr(sig, p)
    assert out.W.shape == (sig.nMics, sig.nMics, p.nBins)
    assert out.rankRequested == p.rankS
    assert not out.extended
    # Target and interference frames are complementary
    assert not np.any(out.vadTarget & out.vadInterf)


def test_batch_nrext_shapes(scenario):
    sig, _, _ = scenario
    p = NRAECparameters(printouts=QUIET)
    out = nr.compute_nrext(sig, p)
    C = sig.nMics + sig.nLoudspeakers
    assert out.W.shape == (C, C, p.nBins)
    assert out.Rxx.shape == (p.nBins, C, C)
    assert out.rankRequested == sig.nLoudspeakers + 1
    assert out.extended
    # Single-source frames are used for neither matrix
    assert np.any(~out.vadTarget & ~out.vadInterf)


def test_explicit_nrext_rank(scenario):
    sig, _, _ = scenario
    p = NRAECparameters(rankSES=1, printouts=QUIET)
    assert nr.compute_nrext(sig, p).rankRequested == 1


def test_adaptive_nr_shapes(scenario, small_params):
    sig, _, _ = scenario
    out = nr.compute_nr_adaptive(sig, small_params)
    nFrames = out.vadTarget.shape[0]
    assert out.W.shape == (sig.nMics, sig.nMics, nFrames, small_params.nBins)
    assert out.rankEff.shape == (nFrames, small_params.nBins)
    out = nr.compute_nrext_adaptive(sig, small_params)
    C = sig.nMics + sig.nLoudspeakers
    assert out.W.shape == (C, C, nFrames, small_params.nBins)


def test_dimension_mismatch_raises(scenario):
    sig, _, _ = scenario
    with pytest.raises(ValueError):
        nr.compute_nr(sig, NRAECparameters(nMics=4, printouts=QUIET))


@pytest.mark.parametrize('mode', ['batch', 'adaptive'])
def test_rank_clamps_are_printed(scenario, mode, capsys):
    """A rank above the number of channels is clamped in every bin, and
    the count is printed in both processing modes."""
    sig, _, _ = scenario
    p = NRAECparameters(
        DFTsize=128,
        frameShift=64,
        rankS=sig.nMics + 3,
        processingMode=mode,
        printouts=PrintoutsParameters(verbose=True, printoutTiming=False),
    )
    with pytest.warns(UserWarning, match='clamped'):
        if mode == 'batch':
            out = nr.compute_nr(sig, p)
        else:
            out = nr.compute_nr_adaptive(sig, p)
    assert out.nRankClamps == out.rankEff.size
    assert f'rank clamped in {out.rankEff.size}/{out.rankEff.size}' in capsys.readouterr().out
    # Silent when printouts are disabled
    p = NRAECparameters(rankS=sig.nMics + 3, printouts=QUIET)
    with pytest.warns(UserWarning):
        nr.compute_nr(sig, p)
    assert capsys.readouterr().out == ''
