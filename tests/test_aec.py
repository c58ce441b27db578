# tests/test_aec.py
import pytest
import numpy as np
import scipy.signal as sig
import nraec_toolbox.n_aec as aec
from nraec_toolbox.n_classes import SignalBundle
from nraec_toolbox.n_base import NRAECparameters, PrintoutsParameters

QUIET = PrintoutsParameters(verbose=False)


def echo_only_bundle(rng, h, T):
    """Single microphone, single loudspeaker, echo only (no desired
    speech, no noise)."""
    ls = rng.normal(size=T)
    es = sig.lfilter(h, 1, ls)
    zeros = np.zeros(T)
    return SignalBundle.from_components(
        s=zeros, n=zeros, es=es, en=zeros, ls=ls, ln=zeros
    )


def test_batch_nlms_converges_to_centered_echo_path(rng):
    h = rng.normal(size=16) * np.exp(-np.arange(16) / 4)
    sigIn = echo_only_bundle(rng, h, 20000)
    p = NRAECparameters(Lfhat=16, mu=0.1, printouts=QUIET)
    out = aec.compute_aec(sigIn, p)
    assert out.fhat.shape == (16, 1, 1)
    np.testing.assert_allclose(
        out.fhat[:, 0, 0], aec.center_echo_paths(h), atol=1e-6
    )
    # Every sample with a full loudspeaker history was used
    assert out.nUpdates[0] == 20000 - 16 + 1


def test_centering_is_idempotent(rng):
    f = rng.normal(size=(8, 2, 3))
    fc = aec.center_echo_paths(f)
    np.testing.assert_allclose(np.mean(fc, axis=0), 0, atol=1e-14)
    np.testing.assert_allclose(aec.center_echo_paths(fc), fc, atol=1e-14)


def test_adaptive_nlms_trajectory(rng):
    h = rng.normal(size=16)
    h -= np.mean(h)
    sigIn = echo_only_bundle(rng, h, 8000)
    p = NRAECparameters(Lfhat=16, mu=0.1, processingMode='adaptive',
        printouts=QUIET)
    out = aec.compute_aec_adaptive(sigIn, p)
    assert out.fhat.shape == (16, 1, 1, 8000)
    assert np.all(out.fhat[..., 0] == 0)
    # Centered at every sample
    np.testing.assert_allclose(np.mean(out.fhat, axis=0), 0, atol=1e-12)
    np.testing.assert_allclose(out.fhatFinal[:, 0, 0], h, atol=1e-6)


def test_no_update_during_desired_speech(rng):
    """The filter is frozen while the desired speech is active."""
    T = 4000
    ls = rng.normal(size=T)
    s = np.zeros(T)
    s[T // 2:] = 1. + rng.uniform(size=T // 2)
    zeros = np.zeros(T)
    sigIn = SignalBundle.from_components(
        s=s, n=zeros, es=sig.lfilter([0.5, 0.2], 1, ls), en=zeros,
        ls=ls, ln=zeros
    )
    p = NRAECparameters(Lfhat=8, processingMode='adaptive', printouts=QUIET)
    out = aec.compute_aec_adaptive(sigIn, p)
    assert not np.any(out.vadUpdate[T // 2:, 0])
    np.testing.assert_allclose(
        out.fhat[..., T // 2 + 1], out.fhat[..., -1], atol=1e-12
    )


def test_batch_echo_gating_switch(rng):
    T = 4000
    ls = np.zeros(T)
    ls[T // 2:] = 1. + rng.uniform(size=T // 2)
    zeros = np.zeros(T)
    sigIn = SignalBundle.from_components(
        s=zeros, n=rng.normal(size=T) * 1e-2, es=sig.lfilter([1.], 1, ls),
        en=zeros, ls=ls, ln=zeros
    )
    flagsAll = aec.get_update_flags(sigIn, NRAECparameters(), echoGating=False)
    flagsGated = aec.get_update_flags(sigIn, NRAECparameters(), echoGating=True)
    assert np.all(flagsAll)
    assert not np.any(flagsGated[:T // 2])
    assert np.all(flagsGated[T // 2:])
    p = NRAECparameters(Lfhat=8, aecBatchEchoGating=True, printouts=QUIET)
    assert aec.compute_aec(sigIn, p).nUpdates[0] == T // 2


def test_filter_longer_than_signal_raises(rng):
    sigIn = echo_only_bundle(rng, [1.], 100)
    with pytest.raises(ValueError):
        aec.compute_aec(sigIn, NRAECparameters(Lfhat=128, printouts=QUIET))
