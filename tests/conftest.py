# tests/conftest.py
import pytest
import numpy as np
import siggen.utils as sig_ut
from siggen.classes import ScenarioParameters, RandomSignalsParameters
from nraec_toolbox.n_base import NRAECparameters, PrintoutsParameters


QUIET = PrintoutsParameters(verbose=False)


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def small_params():
    """Short frames and filters, for fast adaptive runs."""
    return NRAECparameters(
        DFTsize=128,
        frameShift=64,
        Lfhat=32,
        printouts=QUIET,
    )


@pytest.fixture(scope='session')
def scenario_params():
    return ScenarioParameters(
        sigDur=2.,
        nMics=2,
        nLoudspeakers=1,
        snr=5.,
        ser=0.,
        lenRIR=256,
        lenEchoPath=128,
        # Spectrally rich loudspeaker excitation
        farEndRandSignals=RandomSignalsParameters(lowpassPole=0.),
    )


@pytest.fixture(scope='session')
def scenario(scenario_params):
    """Noise only, echo only, desired speech only, double talk."""
    return sig_ut.build_scenario(scenario_params, seed=1)
