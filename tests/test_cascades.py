# tests/test_cascades.py
import numpy as np
import nraec_toolbox.n_base as base
import nraec_toolbox.n_core as core
import nraec_toolbox.n_eval as ev
import siggen.utils as sig_ut
from siggen.classes import ScenarioParameters
from nraec_toolbox.n_base import NRAECparameters, PrintoutsParameters

QUIET = PrintoutsParameters(verbose=False)


def echo_power(x):
    return np.mean(x.e ** 2)


def test_identity_nr_filters_delay_all_components(scenario):
    """Identity frequency-domain filters only delay the signals by
    N - 1 samples (loudspeaker signals included, in the extended case)."""
    sig, _, _ = scenario
    N, S = 64, 32
    win = base.get_window('sqrthann', N, S)
    C = sig.nMics + sig.nLoudspeakers
    W = np.tile(np.eye(C)[:, :, np.newaxis], (1, 1, N // 2 + 1)) + 0j
    wTD = base.stft_filters_to_td(W, win, win, S)
    out = core.apply_nr_filters(sig, wTD, extended=True)
    for name in ['m', 's', 'es', 'l', 'ls', 'ln']:
        np.testing.assert_allclose(
            getattr(out, name)[N - 1:], getattr(sig, name)[:-(N - 1)],
            atol=1e-10
        )
    assert out.is_consistent()


def test_extended_nr_leaks_into_loudspeaker_outputs(scenario):
    """Microphone signals leaking into the loudspeaker outputs keep the
    microphone-side relation after NRext, but not the loudspeaker-side
    one, nor the microphone-side one after echo cancellation."""
    sig, _, _ = scenario
    M, L = sig.nMics, sig.nLoudspeakers
    wTD = np.zeros((8, M + L, M + L))
    for c in range(M + L):
        wTD[0, c, c] = 1.
    wTD[0, 0, M] = 0.5    # reference microphone into loudspeaker 0
    sigNR = core.apply_nr_filters(sig, wTD, extended=True)
    assert sigNR.is_consistent(micsOnly=True)
    assert not sigNR.is_consistent()
    np.testing.assert_allclose(
        sigNR.l[:, 0] - sigNR.ls[:, 0] - sigNR.ln[:, 0],
        0.5 * (sig.s[:, 0] + sig.n[:, 0]), atol=1e-10
    )
    fhat = np.zeros((4, L, M))
    fhat[1, :, :] = 0.3
    sigOut = core.apply_aec_filters(sigNR, fhat)
    assert not sigOut.is_consistent(micsOnly=True)


def test_held_filters_pass_through_before_first_update(scenario, small_params):
    sig, _, _ = scenario
    out = core.nraec_adaptive(sig, small_params)
    first = out.updateInstants[0]
    np.testing.assert_allclose(out.sigNR.m[:first], sig.m[:first], atol=1e-10)
    assert out.wTD.shape[-1] == len(out.updateInstants)
    assert out.aec.fhat.shape[-1] == sig.nSamples


def test_batch_cascades_end_to_end(scenario):
    """NR-AEC and NRext-AEC on a scenario with noise-only, echo-only,
    desired-only, and double-talk segments."""
    sig, _, _ = scenario
    p = NRAECparameters(printouts=QUIET)
    outNR, outNRext = core.run_cascades(sig, p)
    assert (outNR.name, outNRext.name) == ('NR-AEC', 'NRext-AEC')
    for out in [outNR, outNRext]:
        assert out.processingMode == 'batch'
        assert out.sigOut.nSamples == sig.nSamples
        assert out.sigNR.is_consistent(micsOnly=True)
    assert outNR.sigOut.is_consistent()
    assert outNR.wTD.shape == (2 * p.DFTsize - 1, sig.nMics, sig.nMics)
    C = sig.nMics + sig.nLoudspeakers
    assert outNRext.wTD.shape == (2 * p.DFTsize - 1, C, C)
    # The AEC following the extended NR removes echo
    assert echo_power(outNRext.sigOut) < 0.5 * echo_power(outNRext.sigNR)

    measNR = ev.evaluate_cascade(outNR, sig, p)
    measNRext = ev.evaluate_cascade(outNRext, sig, p)
    for meas in [measNR, measNRext]:
        assert np.isfinite([meas.snr.diff, meas.ser.diff, meas.sd]).all()
    assert measNR.snr.diff > 0
    assert measNR.ser.diff > 0
    assert measNRext.ser.diff > 0
    assert measNRext.snr.diff >= measNR.snr.diff


def test_adaptive_cascades_smoke(small_params):
    p = ScenarioParameters(sigDur=0.5, nMics=2, nLoudspeakers=1,
        lenRIR=32, lenEchoPath=16)
    sig, _, _ = sig_ut.build_scenario(p, seed=3)
    pAdapt = NRAECparameters(
        DFTsize=small_params.DFTsize,
        frameShift=small_params.frameShift,
        Lfhat=16,
        processingMode='adaptive',
        printouts=QUIET,
    )
    outNR, outNRext = core.run_cascades(sig, pAdapt)
    nFrames = base.get_nframes(sig.nSamples, pAdapt.DFTsize, pAdapt.frameShift)
    assert outNR.nr.W.shape == (2, 2, nFrames, pAdapt.nBins)
    assert outNRext.nr.W.shape == (3, 3, nFrames, pAdapt.nBins)
    assert outNRext.aec.fhat.shape == (16, 1, 2, sig.nSamples)
    for out in [outNR, outNRext]:
        assert out.processingMode == 'adaptive'
        assert np.all(np.isfinite(out.sigOut.m))
        assert out.runTime > 0
