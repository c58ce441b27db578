# Purpose of script:
#  - Build a scenario (microphone and loudspeaker signals), run the NR-AEC
#    and NRext-AEC cascades, and compare their SNR/SER improvements.

import sys
import time
import datetime
from pathlib import Path
import siggen.utils as sig_ut
import nraec_toolbox.n_eval as ev
import nraec_toolbox.n_post as pp
import nraec_toolbox.n_core as core
import nraec_toolbox.n_classes as cl

PATH_TO_CONFIG_FILE = f'{Path(__file__).parent}/config_files/main_config.yaml'


def main(
        p: cl.TestParameters=None,
        cfgFilename: str=''
    ) -> list[ev.EnhancementMeasures]:
    """Main function.

    Parameters:
    -----------
    p: TestParameters
        Test parameters. If None, loaded from `cfgFilename`.
    cfgFilename: str
        Path to the config file to use. If empty, use the default one.

    Returns:
    --------
    measures: list of EnhancementMeasures
        Metrics of the NR-AEC and NRext-AEC cascades.
    """
    t0 = time.time()

    if p is None:
        # Load parameters from config file
        print('Loading parameters...')
        pathToCfg = cfgFilename if cfgFilename else PATH_TO_CONFIG_FILE
        p = cl.TestParameters().load_from_yaml(pathToCfg)
        print('Parameters loaded.')

    # Build scenario
    print('Building scenario...')
    sig, trueEchoPaths, fs = sig_ut.build_scenario(p.scenarioParams, p.seed)
    if fs != p.nraecParams.fs:
        raise ValueError(f'The scenario sampling frequency ({fs} Hz) does not match the cascades sampling frequency ({p.nraecParams.fs} Hz).')
    print(f'Scenario built ({sig.nMics} microphone(s), {sig.nLoudspeakers} loudspeaker(s), {sig.nSamples} samples).')

    # Cascades
    outs = core.run_cascades(sig, p.nraecParams)

    # Metrics
    measures = [ev.evaluate_cascade(out, sig, p.nraecParams) for out in outs]
    print(f'\nReference microphone #{p.nraecParams.ref + 1}, before processing:')
    print(f'\t SNR: {measures[0].snr.before:.6f} dB')
    print(f'\t SER: {measures[0].ser.before:.6f} dB\n')
    for out, meas in zip(outs, measures):
        pp.print_metrics_report(out.name, meas)

    # Post-process results (save, export, plot...)
    if not p.exportParams.bypassAllExports:
        print('Exporting results...')
        pp.export_outputs(outs, measures, sig, p, trueEchoPaths)
        print(f'Results exported to "{p.exportParams.exportFolder}".')

    print(f'\n\nTotal runtime: {str(datetime.timedelta(seconds=time.time() - t0))}.')

    return measures


if __name__ == '__main__':
    sys.exit(main())
