# Methods for exporting/importing dataclasses (Pickle archives, YAML
# configuration files).

import yaml
import pickle, gzip
import numpy as np
from pathlib import Path
import dataclass_wizard as dcw
from dataclasses import asdict, is_dataclass


def save(self, foldername: str, silent=False):
    """
    Saves dataclass to a compressed Pickle archive (.pkl.gz).

    Parameters
    ----------
    self : dataclass
        Dataclass to be exported.
    foldername : str
        Folder where to export the dataclass.
    silent : bool
        If True, no printouts.
    """
    Path(foldername).mkdir(parents=True, exist_ok=True)
    pathToFile = f'{foldername}/{type(self).__name__}.pkl.gz'
    with gzip.open(pathToFile, 'wb') as f:
        pickle.dump(self, f)
    if not silent:
        print(f'<{type(self).__name__}> object data exported to directory\n".../{shorten_path(foldername)}".')


def load(self, foldername: str, silent=False):
    """
    Loads dataclass from a compressed Pickle archive (.pkl.gz) exported
    with `save()`.

    Parameters
    ----------
    self : dataclass
        Instance of the dataclass to be imported (only its type is used).
    foldername : str
        Folder where the dataclass was exported.
    silent : bool
        If True, no printouts.

    Returns
    -------
    out : dataclass
        Imported dataclass instance.
    """
    if not Path(foldername).is_dir():
        raise ValueError(f'The folder "{foldername}" cannot be found.')
    pathToFile = f'{foldername}/{type(self).__name__}.pkl.gz'
    if not Path(pathToFile).is_file():
        raise ValueError(f'Import issue, file\n"{pathToFile}"\nnot found.')
    with gzip.open(pathToFile, 'rb') as f:
        out = pickle.load(f)
    if not isinstance(out, type(self)):
        raise TypeError(f'The archive contains a <{type(out).__name__}> object, expected <{type(self).__name__}>.')
    if not silent:
        print(f'<{type(self).__name__}> object data loaded from directory\n".../{shorten_path(foldername)}".')
    return out


def shorten_path(file_path, length=3):
    """Splits `file_path` into separate parts, select the last
    `length` elements and join them again
    -- from: https://stackoverflow.com/a/49758154
    """
    return Path(*Path(file_path).parts[-length:])


def load_from_yaml(path, mycls):
    """
    Loads dataclass from YAML file. Fields absent from the file keep
    their default values.

    Parameters
    ----------
    path : str
        Path to YAML file.
    mycls : dataclass or dataclass type
        Dataclass (instance or type) to be loaded.

    Returns
    -------
    out : dataclass
        Dataclass instance.
    """
    if not Path(path).is_file():
        raise ValueError(f'The YAML file "{path}" cannot be found.')
    with open(path, 'r') as f:
        d = yaml.load(f, Loader=yaml.SafeLoader)
    if d is None:
        d = dict()
    if not isinstance(d, dict):
        raise ValueError(f'The YAML file "{path}" does not contain a mapping.')
    cls = mycls if isinstance(mycls, type) else type(mycls)
    return dcw.fromdict(cls, d)


def dump_to_yaml_template(myDataclass, path=None):
    """
    Dumps a YAML template for a dataclass.

    Parameters
    ----------
    myDataclass : dataclass instance
        Dataclass to be dumped.
    path : str
        Path to YAML file. If None, the YAML file is saved in the current
        directory, under the dataclass' name.
    """
    if not is_dataclass(myDataclass):
        raise TypeError(f'<{type(myDataclass).__name__}> is not a dataclass.')
    if path is None:
        path = f'{type(myDataclass).__name__}.yaml'
    with open(path, 'w') as f:
        yaml.dump(to_builtin(asdict(myDataclass)), f, sort_keys=False)
    print(f'YAML template for <{type(myDataclass).__name__}> dumped to "{path}".')


def to_builtin(x):
    """Converts numpy types to built-in Python types (for YAML export)."""
    if isinstance(x, dict):
        return {k: to_builtin(v) for k, v in x.items()}
    elif isinstance(x, (list, tuple)):
        return [to_builtin(v) for v in x]
    elif isinstance(x, np.ndarray):
        return x.tolist()
    elif isinstance(x, np.generic):
        return x.item()
    return x
