#!/usr/bin/env python3
"""
Configuration - Loads the YAML configuration and merges it over defaults.
"""

import copy
import logging
from typing import Dict, Any, Optional

import yaml

from .errors import ArgumentError


DEFAULT_CONFIG_PATH = "/etc/meshadmin-ruleapply/config.yaml"

logger = logging.getLogger(__name__)


def get_default_config() -> Dict[str, Any]:
    """Return default configuration."""
    return {
        'global': {
            'default_timeout': 10,
            'log_level': 'INFO',
            'log_file': '/var/log/meshadmin-ruleapply.log'
        },
        'rules': {
            'ipv4_file': '/etc/network/iptables.up.rules',
            'ipv6_file': '/etc/network/ip6tables.up.rules'
        },
        'backend': {
            'ipv4': {'save': 'iptables-save', 'restore': 'iptables-restore'},
            'ipv6': {'save': 'ip6tables-save', 'restore': 'ip6tables-restore'}
        },
        'lock': {
            'lock_dir': '/run/meshadmin-ruleapply',
            'reclaim_stale': False
        },
        'snapshot': {
            'snapshot_location': '/var/lib/meshadmin-ruleapply/snapshots'
        },
        'confirmation': {
            'prompt': 'Can you establish NEW connections to the machine? (y/N) ',
            'affirmative': ['y']
        },
        'dependent_service': {
            'name': 'fail2ban',
            'enabled': True
        }
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into base."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from YAML file, falling back to defaults."""
    config = get_default_config()
    path = config_path or DEFAULT_CONFIG_PATH

    try:
        with open(path, 'r') as f:
            loaded = yaml.safe_load(f)
    except FileNotFoundError:
        logger.debug(f"Configuration file not found, using defaults: {path}")
        return config
    except yaml.YAMLError as e:
        raise ArgumentError(f"Error parsing configuration file {path}: {e}") from e

    if loaded is None:
        return config
    if not isinstance(loaded, dict):
        raise ArgumentError(f"Configuration file {path} must contain a mapping")

    return _merge(config, copy.deepcopy(loaded))
