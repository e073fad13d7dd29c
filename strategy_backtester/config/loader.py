"""
Configuration loader for YAML/JSON files.
"""

import os
import yaml
import json
from pathlib import Path
from typing import Union
from .config_schema import Config


def _expand_env_vars(config_dict: dict) -> dict:
    """Recursively expand environment variables in config dictionary"""
    if isinstance(config_dict, dict):
        return {k: _expand_env_vars(v) for k, v in config_dict.items()}
    elif isinstance(config_dict, list):
        return [_expand_env_vars(item) for item in config_dict]
    elif isinstance(config_dict, str):
        # ${VAR_NAME} and $VAR_NAME
        return os.path.expandvars(config_dict)
    else:
        return config_dict


def _read_document(path: Path) -> dict:
    with open(path, 'r') as f:
        if path.suffix in ['.yaml', '.yml']:
            document = yaml.safe_load(f)
        elif path.suffix == '.json':
            document = json.load(f)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    return document or {}


def load_config(config_path: Union[str, Path]) -> Config:
    """Load configuration from YAML or JSON file"""
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    config_dict = _expand_env_vars(_read_document(config_path))

    return Config(**config_dict)


def load_document(document_path: Union[str, Path]) -> dict:
    """
    Load a strategy or instrument document from YAML or JSON.

    Environment variables are expanded the same way as in configuration files.
    """
    document_path = Path(document_path)

    if not document_path.exists():
        raise FileNotFoundError(f"Document not found: {document_path}")

    return _expand_env_vars(_read_document(document_path))


def save_config(config: Config, config_path: Union[str, Path]):
    """Save configuration to YAML or JSON file"""
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        if config_path.suffix in ['.yaml', '.yml']:
            yaml.dump(config.model_dump(), f, default_flow_style=False)
        elif config_path.suffix == '.json':
            json.dump(config.model_dump(), f, indent=2)
        else:
            raise ValueError(f"Unsupported config format: {config_path.suffix}")
