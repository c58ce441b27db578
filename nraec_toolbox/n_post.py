# Post-processing functions for, e.g., visualizing and exporting the
# NR-AEC and NRext-AEC outputs.

import numpy as np
from pathlib import Path
from scipy.io import wavfile
import matplotlib.pyplot as plt
import nraec_toolbox.dataclass_methods as met
from nraec_toolbox.n_eval import EnhancementMeasures
from nraec_toolbox.n_classes import SignalBundle, CascadeOutputs


def print_metrics_report(name, measures: EnhancementMeasures):
    """Prints the SNR and SER improvements and the speech distortion."""
    print(f'{name}:')
    print(f'\t SNR improvement: {measures.snr.diff:.6f} dB')
    print(f'\t SER improvement: {measures.ser.diff:.6f} dB')
    print(f'\t SD: {measures.sd:.6f} dB\n')


def plot_cascade(
        out: CascadeOutputs,
        sig: SignalBundle,
        ref=0,
        trueEchoPaths=None
    ):
    """
    Plots the desired speech, noise, and echo before and after processing
    at the reference microphone, along with the final echo-path estimate
    from the first loudspeaker.

    Parameters
    ----------
    out : CascadeOutputs object
        Cascade outputs.
    sig : SignalBundle object
        Unprocessed signals.
    ref : int
        Reference microphone index.
    trueEchoPaths : [Lf x L x M] np.ndarray (float) or None
        True echo paths (not plotted if None).

    Returns
    -------
    fig : matplotlib.figure.Figure object
        Figure.
    """
    fig, axes = plt.subplots(2, 2)
    fig.set_size_inches(10.5, 6.5)
    toPlot = [
        ('Desired speech', sig.s[:, ref], out.sigOut.s[:, ref]),
        ('Noise', sig.n[:, ref], out.sigOut.n[:, ref]),
        ('Echo', sig.e[:, ref], out.sigOut.e[:, ref]),
    ]
    for ii, (title, before, after) in enumerate(toPlot):
        currAx = axes.flat[ii]
        currAx.plot(before, 'C0-', label='Input')
        currAx.plot(after, 'C1-', label='Output')
        currAx.grid()
        currAx.set_title(title)
        currAx.set_xlabel('Time [samples]')
        currAx.set_ylabel('Amplitude [arb. unit]')
        if ii == 0:
            currAx.legend(loc='upper right')
    # Echo path
    currAx = axes.flat[3]
    if trueEchoPaths is not None:
        currAx.plot(trueEchoPaths[:, 0, ref], 'C4-', label='True')
    currAx.plot(out.aec.fhatFinal[:, 0, ref], 'C2-', label='AEC filter')
    currAx.grid()
    currAx.set_title('Echo path impulse response')
    currAx.set_xlabel('Time [samples]')
    currAx.set_ylabel('Amplitude [arb. unit]')
    currAx.legend(loc='upper right')
    fig.suptitle(f'{out.name} ({out.processingMode})')
    fig.tight_layout()
    return fig


def export_sounds(
        out: CascadeOutputs,
        sig: SignalBundle,
        folder: str,
        fs: float,
        ref=0
    ):
    """
    Exports the unprocessed and processed reference-microphone signals
    as WAV files.

    Parameters
    ----------
    out : CascadeOutputs object
        Cascade outputs.
    sig : SignalBundle object
        Unprocessed signals.
    folder : str
        Folder where to create the "wav" folder where to export files.
    fs : float
        Sampling frequency [Hz].
    ref : int
        Reference microphone index.
    """
    folderShort = met.shorten_path(folder)
    # Check path validity
    if not Path(f'{folder}/wav').is_dir():
        Path(f'{folder}/wav').mkdir(parents=True)
        print(f'Created .wav export folder ".../{folderShort}/wav".')

    tag = out.name.replace('-', '')
    toExport = {
        'mic_unprocessed': sig.m[:, ref],
        'desired_unprocessed': sig.s[:, ref],
        f'mic_{tag}': out.sigOut.m[:, ref],
        f'desired_{tag}': out.sigOut.s[:, ref],
        f'mic_{tag}_afterNR': out.sigNR.m[:, ref],
    }
    for name, data in toExport.items():
        wavfile.write(
            f'{folder}/wav/{name}_Mref{ref + 1}.wav',
            int(fs),
            normalize_toint16(data)
        )


def normalize_toint16(nparray):
    """Normalizes a NumPy array to integer 16.
    Parameters
    ----------
    nparray : np.ndarray
        Input array to be normalized.

    Returns
    ----------
    nparrayNormalized : np.ndarray
        Normalized array.
    """
    amplitude = np.iinfo(np.int16).max
    peak = np.amax(np.abs(nparray))
    if peak == 0:
        return np.zeros(nparray.shape, dtype=np.int16)
    nparrayNormalized = (amplitude * nparray / peak * 0.5).astype(np.int16)
        # ^^^ 0.5 to avoid clipping
    return nparrayNormalized


def export_outputs(
        outs: list[CascadeOutputs],
        measures: list[EnhancementMeasures],
        sig: SignalBundle,
        p,
        trueEchoPaths=None
    ):
    """
    Exports the cascades' outputs (figures, WAV files, Pickle archives)
    according to the export parameters.

    Parameters
    ----------
    outs : list of CascadeOutputs objects
        Cascades outputs.
    measures : list of EnhancementMeasures objects
        Cascades metrics.
    sig : SignalBundle object
        Unprocessed signals.
    p : TestParameters object
        Test parameters.
    trueEchoPaths : [Lf x L x M] np.ndarray (float) or None
        True echo paths.
    """
    pExp = p.exportParams
    folder = pExp.exportFolder
    Path(folder).mkdir(parents=True, exist_ok=True)
    ref = p.nraecParams.ref

    for out, meas in zip(outs, measures):
        tag = out.name.replace('-', '')
        if pExp.signalsPlot:
            fig = plot_cascade(out, sig, ref, trueEchoPaths)
            fig.savefig(f'{folder}/{tag}_signals.png', dpi=300)
            fig.savefig(f'{folder}/{tag}_signals.pdf')
            if not pExp.showFigures:
                plt.close(fig)
        if pExp.wavFiles:
            export_sounds(out, sig, folder, p.nraecParams.fs, ref)
        if pExp.pickleOutputs:
            out.save(f'{folder}/{tag}', light=True)
            met.save(meas, f'{folder}/{tag}')
    if p.originYaml is not None:
        p.save_yaml()
    if pExp.showFigures:
        plt.show()
