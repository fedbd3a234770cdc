"""
Pipeline-wide constants.

Per-feature parameters (item IDs, bounds, windows) live in the feature registry;
this module only holds the settings shared by several extraction steps.
"""
import os

import pandas as pd

# Path to the MIMIC-III DuckDB database file
DUCKDB_PATH = os.environ.get("MIMIC_DUCKDB_PATH", "data/mimiciii.duckdb")

# Monitoring window estimation
HEART_RATE_ITEMIDS = [211, 220045]                # CareVue, MetaVision
MONITORING_FUZZ_BEFORE = pd.Timedelta(hours=12)   # Look-back before admittime
MONITORING_FUZZ_AFTER = pd.Timedelta(hours=12)    # Look-ahead after dischtime
MIN_MONITORING_COVERAGE = 0.90                    # Warn below this share of stays with a window

# Standard extraction windows around ICU admission
FIRST_MEASUREMENT_LOOKBACK = pd.Timedelta(hours=6)
ANTHROPOMETRIC_LOOKBACK = pd.Timedelta(days=1)
LIPID_LOOKBACK = pd.Timedelta(days=7)

# HIPAA de-identification: ages above the threshold are shifted in MIMIC-III
DEIDENTIFIED_AGE_THRESHOLD = 89
DEIDENTIFIED_AGE_SENTINEL = 91.4                  # Median age of the shifted group

READMISSION_WINDOW_DAYS = 30

# Prefix of materialised feature tables (icu_first_heartrate, ...)
FEATURE_TABLE_PREFIX = "icu_first_"
