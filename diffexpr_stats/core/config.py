#!/usr/bin/env python
# coding: utf-8

"""
Vignette Configuration Database
Centralized configuration for datasets, preprocessing, and report output
"""

import copy
import json
import os
from datetime import datetime
from typing import Any, Dict, Optional

import pandas as pd


# ============================================================================
# DEFAULT CONFIGURATION DATABASE
# ============================================================================

RECOUNT_BASE_URL = "http://bowtie-bio.sourceforge.net/recount"

DEFAULT_DATASETS = {
    'bottomly': {
        'name': 'Bottomly et al. 2011',
        'organism': 'Mus musculus',
        'tissue': 'Striatum',
        'count_url': f'{RECOUNT_BASE_URL}/countTables/bottomly_count_table.txt',
        'pheno_url': f'{RECOUNT_BASE_URL}/phenotypeTables/bottomly_phenodata.txt',
        'group_col': 'strain',
        'batch_col': 'lane.number',
        'description': 'C57BL/6J vs DBA/2J inbred strains, 21 samples over 7 lanes'
    },
    'montpick': {
        'name': 'Montgomery and Pickrell (HapMap)',
        'organism': 'Homo sapiens',
        'tissue': 'Lymphoblastoid cell lines',
        'count_url': f'{RECOUNT_BASE_URL}/countTables/montpick_count_table.txt',
        'pheno_url': f'{RECOUNT_BASE_URL}/phenotypeTables/montpick_phenodata.txt',
        'group_col': 'population',
        'batch_col': 'study',
        'description': 'CEU vs YRI lymphoblastoid cell lines from two studies'
    }
}

REQUIRED_DATASET_FIELDS = ('name', 'count_url', 'pheno_url', 'group_col', 'batch_col')

DEFAULT_PREPROCESSING = {
    'pseudocount': 1.0,
    'log_base': 2.0,
    'min_mean_expression': 10.0
}

DEFAULT_REPORT = {
    'dataset': 'bottomly',
    'output_dir': 'log',
    'dpi': 150,
    'echo': True,
    'timeout': 60,
    'cache_dir': None,
    'fdr': 0.05
}


# ============================================================================
# CONFIGURATION MANAGER
# ============================================================================

class VignetteConfig:
    """
    Configuration manager for the differential expression vignette.

    Handles loading/saving configurations from files and provides
    centralized access to dataset, preprocessing, and report settings.
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Parameters
        ----------
        config_file : str, optional
            Path to JSON configuration file
        """
        self.datasets = copy.deepcopy(DEFAULT_DATASETS)
        self.preprocessing = DEFAULT_PREPROCESSING.copy()
        self.report = DEFAULT_REPORT.copy()

        if config_file and os.path.exists(config_file):
            self.load_from_file(config_file)

    def load_from_file(self, filepath: str):
        """
        Load configuration from JSON file.

        Only sections present in the file are updated.

        Parameters
        ----------
        filepath : str
            Path to JSON configuration file
        """
        with open(filepath, 'r') as f:
            config = json.load(f)

        if 'datasets' in config:
            self.datasets.update(config['datasets'])
        if 'preprocessing' in config:
            self.preprocessing.update(config['preprocessing'])
        if 'report' in config:
            self.report.update(config['report'])

    def save_to_file(self, filepath: str):
        """
        Save current configuration to JSON file.

        Parameters
        ----------
        filepath : str
            Path to save JSON configuration
        """
        config = {
            'datasets': self.datasets,
            'preprocessing': self.preprocessing,
            'report': self.report,
            'last_updated': datetime.now().isoformat()
        }

        with open(filepath, 'w') as f:
            json.dump(config, f, indent=2)

    def get_dataset(self, dataset_id: Optional[str] = None) -> Dict[str, Any]:
        """Get dataset information (defaults to the configured dataset)."""
        dataset_id = dataset_id or self.report['dataset']
        if dataset_id not in self.datasets:
            raise KeyError(
                f"Unknown dataset '{dataset_id}'. "
                f"Available: {sorted(self.datasets)}"
            )
        return self.datasets[dataset_id]

    def add_dataset(self, dataset_id: str, dataset_info: Dict[str, Any]):
        """
        Add a custom dataset to the registry.

        Parameters
        ----------
        dataset_id : str
            Unique identifier for dataset
        dataset_info : dict
            Dataset information (must include required fields)
        """
        for field in REQUIRED_DATASET_FIELDS:
            if field not in dataset_info:
                raise ValueError(f"Missing required field: {field}")

        self.datasets[dataset_id] = dataset_info

    def list_datasets(self) -> pd.DataFrame:
        """List available datasets."""
        rows = []
        for dataset_id, info in self.datasets.items():
            rows.append({
                'ID': dataset_id,
                'Name': info['name'],
                'Organism': info.get('organism', ''),
                'Group': info['group_col'],
                'Batch': info['batch_col'],
                'Description': info.get('description', '')
            })
        return pd.DataFrame(rows)


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

# Global configuration instance
_global_config = VignetteConfig()


def get_config() -> VignetteConfig:
    """
    Get global configuration instance.

    Returns
    -------
    VignetteConfig
        Global configuration object

    Examples
    --------
    >>> config = get_config()
    >>> config.get_dataset('bottomly')['group_col']
    'strain'
    """
    return _global_config


def load_config(filepath: str):
    """
    Load configuration from JSON file into the global instance.

    Parameters
    ----------
    filepath : str
        Path to configuration file (.json)
    """
    if not filepath.endswith('.json'):
        raise ValueError("Config file must be JSON format")
    _global_config.load_from_file(filepath)


def export_default_config(filepath: str):
    """
    Export default configuration to a JSON file for customization.

    Parameters
    ----------
    filepath : str
        Path to save configuration (.json)
    """
    if not filepath.endswith('.json'):
        raise ValueError("Filepath must end with .json")
    VignetteConfig().save_to_file(filepath)
    print(f"✔ Default configuration exported to {filepath}")
