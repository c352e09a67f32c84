"""
Configuration Loading and Validation

Handles YAML config files with inheritance and merging, and turns the
parameter tree into typed serving parameters.

Parameter tree (keys match the command line options):

    source1:
      il: [spot6pms.tif]
      fovx: 16
      fovy: 16
      placeholder: x1
    model:
      dir: /tmp/my_model/
      userplaceholders: is_training=false dropout=0.0
      fullyconv: false
    output:
      names: [out_predict1, out_proba1]
      spcscale: 1.0
      foex: 1
      foey: 1
    finetuning:
      disabletiling: false
      tilesize: 16
    out: classif.tif
"""

import copy
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from ..data.raster import PADDING_MODES
from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULTS = {
    'model': {
        'userplaceholders': [],
        'fullyconv': False,
    },
    'output': {
        'spcscale': 1.0,
        'foex': 1,
        'foey': 1,
    },
    'finetuning': {
        'disabletiling': False,
        'tilesize': 16,
        'batchsize': 0,
        'workers': 1,
        'padding': 'edge',
    },
}

_MISSING = object()


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load configuration from YAML file

    Supports inheritance from base configs using comment syntax:
        # Inherits from: ../base.yaml

    Args:
        config_path: Path to config YAML file

    Returns:
        Configuration dictionary
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        try:
            config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigurationError(f"Config file {config_path} must hold a mapping")

    base_config_path = _find_base_config(config_path)

    if base_config_path:
        logger.info(f"Loading base config from {base_config_path}")
        base_config = load_config(base_config_path)
        config = merge_configs(base_config, config)

    logger.info(f"Loaded config from {config_path}")

    return config


def _find_base_config(config_path: Path) -> Optional[Path]:
    """
    Find base config from inheritance comment in YAML file

    Looks for: # Inherits from: ../base.yaml
    """
    with open(config_path, 'r') as f:
        for line in f:
            line = line.strip()
            if line.startswith('#') and 'Inherits from:' in line:
                base_path = line.split('Inherits from:')[1].strip()
                base_path = config_path.parent / base_path

                if base_path.exists():
                    return base_path
                else:
                    logger.warning(f"Base config not found: {base_path}")

    return None


def merge_configs(base: Dict, override: Dict) -> Dict:
    """
    Recursively merge two configuration dictionaries

    Values in 'override' take precedence over values in 'base'
    """
    merged = copy.deepcopy(base)

    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = merge_configs(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def save_config(config: Dict, filepath: str):
    """
    Save configuration to YAML file

    Args:
        config: Configuration dictionary
        filepath: Output file path
    """
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    with open(filepath, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)

    logger.info(f"Saved config to {filepath}")


def set_dotted(config: Dict, key: str, value: Any):
    """Set ``config['a']['b'] = value`` for ``key='a.b'``"""
    *groups, leaf = key.split('.')
    node = config
    for group in groups:
        node = node.setdefault(group, {})
        if not isinstance(node, dict):
            raise ConfigurationError(f"Parameter group {group!r} is not a mapping", key=key)
    node[leaf] = value


def get_dotted(config: Dict, key: str, default: Any = _MISSING) -> Any:
    node = config
    for part in key.split('.'):
        if not isinstance(node, dict) or part not in node or node[part] is None:
            if default is _MISSING:
                raise ConfigurationError("Mandatory parameter is missing", key=key)
            return default
        node = node[part]
    return node


def get_int(config: Dict, key: str, minimum: int, default: Any = _MISSING) -> int:
    value = get_dotted(config, key, default)
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected an integer, got {value!r}", key=key)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Expected an integer, got {value!r}", key=key) from None
    if isinstance(value, float) and value != number:
        raise ConfigurationError(f"Expected an integer, got {value!r}", key=key)
    if number < minimum:
        raise ConfigurationError(f"Must be >= {minimum}, got {number}", key=key)
    return number


def _as_float(config: Dict, key: str, default: Any = _MISSING) -> float:
    value = get_dotted(config, key, default)
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Expected a number, got {value!r}", key=key) from None


def _as_bool(config: Dict, key: str, default: Any = _MISSING) -> bool:
    value = get_dotted(config, key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str) and value.lower() in ('true', 'false', '1', '0', 'yes', 'no', 'on', 'off'):
        return value.lower() in ('true', '1', 'yes', 'on')
    raise ConfigurationError(f"Expected a boolean, got {value!r}", key=key)


def _as_list(config: Dict, key: str, default: Any = _MISSING) -> List[str]:
    """Lists may be given as YAML lists or as whitespace separated strings"""
    value = get_dotted(config, key, default)
    if isinstance(value, str):
        return value.split()
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value]
    raise ConfigurationError(f"Expected a list of strings, got {value!r}", key=key)


@dataclass
class SourceParameters:
    images: List[str]
    fovx: int
    fovy: int
    placeholder: str


@dataclass
class ServeParameters:
    """Validated, typed view of the parameter tree"""
    sources: List[SourceParameters]
    model_dir: str
    output_names: List[str]
    out: str
    user_placeholders: List[str] = field(default_factory=list)
    fully_conv: bool = False
    spacing_scale: float = 1.0
    foex: int = 1
    foey: int = 1
    disable_tiling: bool = False
    tile_size: int = 16
    batch_size: int = 0
    workers: int = 1
    padding: str = 'edge'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def validate_config(config: Dict, n_sources: int) -> bool:
    """
    Validate configuration has all required fields

    Args:
        config: Configuration dictionary
        n_sources: Number of source groups (source1 ... sourceN)

    Returns:
        True if valid, raises ConfigurationError otherwise
    """
    parameters_from_config(config, n_sources)
    logger.info("Configuration validation passed")
    return True


def parameters_from_config(config: Dict, n_sources: int) -> ServeParameters:
    """
    Build serving parameters from a parameter tree

    Defaults are applied for optional keys; the first invalid or missing
    parameter raises a ConfigurationError naming its key.
    """
    if n_sources < 1:
        raise ConfigurationError(f"Number of sources must be >= 1, got {n_sources}", key='nsources')

    config = merge_configs(DEFAULTS, config)

    sources = []
    for index in range(1, n_sources + 1):
        group = f"source{index}"
        images = _as_list(config, f"{group}.il")
        if not images:
            raise ConfigurationError("Image list is empty", key=f"{group}.il")
        placeholder = str(get_dotted(config, f"{group}.placeholder")).strip()
        if not placeholder:
            raise ConfigurationError("Placeholder name must not be empty", key=f"{group}.placeholder")
        sources.append(SourceParameters(
            images=images,
            fovx=get_int(config, f"{group}.fovx", 1),
            fovy=get_int(config, f"{group}.fovy", 1),
            placeholder=placeholder,
        ))

    extra = sorted(k for k in config if k.startswith('source') and k[6:].isdigit() and int(k[6:]) > n_sources)
    if extra:
        logger.warning(f"Ignoring parameter groups {extra}: only {n_sources} source(s) configured")

    output_names = _as_list(config, 'output.names')
    if not output_names:
        raise ConfigurationError("At least one output tensor name is required", key='output.names')

    spacing_scale = _as_float(config, 'output.spcscale')
    if not spacing_scale > 0:
        raise ConfigurationError(f"Must be > 0, got {spacing_scale}", key='output.spcscale')

    padding = str(get_dotted(config, 'finetuning.padding'))
    if padding not in PADDING_MODES:
        raise ConfigurationError(f"Must be one of {PADDING_MODES}, got {padding!r}", key='finetuning.padding')

    return ServeParameters(
        sources=sources,
        model_dir=str(get_dotted(config, 'model.dir')),
        output_names=output_names,
        out=str(get_dotted(config, 'out')),
        user_placeholders=_as_list(config, 'model.userplaceholders'),
        fully_conv=_as_bool(config, 'model.fullyconv'),
        spacing_scale=spacing_scale,
        foex=get_int(config, 'output.foex', 1),
        foey=get_int(config, 'output.foey', 1),
        disable_tiling=_as_bool(config, 'finetuning.disabletiling'),
        tile_size=get_int(config, 'finetuning.tilesize', 1),
        batch_size=get_int(config, 'finetuning.batchsize', 0),
        workers=get_int(config, 'finetuning.workers', 1),
        padding=padding,
    )
