"""Configuration loader.

Reads pipeline configuration files in YAML format and returns a
dictionary.  The defaults shipped with the project live in
``configs/pipeline_defaults.yaml`` at the repository root; the typed
view over these dictionaries is
:class:`surveyqc.preprocessing.pipeline.PipelineConfig`.
"""

from pathlib import Path
from typing import Any, Dict, Union

import yaml

from ..errors import ConfigurationError


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML configuration file into a dictionary.

    Parameters
    ----------
    path : str or Path
        Path to the YAML configuration file.

    Returns
    -------
    dict
        Parsed configuration dictionary.  Returns an empty dict if the
        file does not exist or is empty.

    Raises
    ------
    ConfigurationError
        If the file exists but is not valid YAML or its top level is
        not a mapping.
    """
    cfg_path = Path(path)
    if not cfg_path.is_file():
        return {}
    try:
        with open(cfg_path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {cfg_path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{cfg_path} must contain a mapping at top level")
    return data
