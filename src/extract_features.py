"""
Main script to extract per-ICU-stay features from a MIMIC-III DuckDB database
"""

import argparse
import logging

import duckdb

from icu_features.config import DUCKDB_PATH
from icu_features.demographics import compute_icu_age, compute_icustay_detail
from icu_features.feature_extraction import (
    WindowSource,
    extract_features,
    materialize_features,
    quality_summary,
)
from icu_features.queries import materialize_table, query_admissions, query_icustays, query_patients
from icu_features.readmission import compute_readmission_30d
from icu_features.registry import FEATURE_REGISTRY
from icu_features.windows import WindowFallback

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def extract_stay_tables(con: duckdb.DuckDBPyConnection) -> None:
    """Materialise the demographic and readmission tables."""
    icustays = query_icustays(con)
    admissions = query_admissions(con)
    patients = query_patients(con)

    materialize_table(con, "icu_age", compute_icu_age(icustays, patients))
    materialize_table(con, "icustay_detail", compute_icustay_detail(icustays, admissions, patients))
    materialize_table(con, "icu_readmission_30d", compute_readmission_30d(icustays))


def main():
    parser = argparse.ArgumentParser(description='Extract per-ICU-stay features from MIMIC-III')
    parser.add_argument('--db_path', type=str, default=DUCKDB_PATH,
                        help='Path to the MIMIC-III DuckDB database')
    parser.add_argument('--features', type=str, nargs='*', default=None,
                        help=f'Features to extract (default: all of {", ".join(FEATURE_REGISTRY)})')
    parser.add_argument('--window_source', type=str, default=WindowSource.ADMINISTRATIVE.value,
                        choices=[source.value for source in WindowSource],
                        help='Anchor windows on administrative or heart-rate-based ICU times')
    parser.add_argument('--window_fallback', type=str, default=None,
                        choices=[fallback.value for fallback in WindowFallback],
                        help='Required with clinical windows: what to do with stays without heart rate')
    parser.add_argument('--skip_demographics', action='store_true',
                        help='Do not rebuild the demographic and readmission tables')
    args = parser.parse_args()

    window_source = WindowSource(args.window_source)
    window_fallback = WindowFallback(args.window_fallback) if args.window_fallback else None
    if window_source is WindowSource.CLINICAL and window_fallback is None:
        parser.error('--window_fallback is required with --window_source clinical')

    logger.info(f"Connecting to {args.db_path}")
    con = duckdb.connect(args.db_path)
    try:
        runs = extract_features(con, args.features, window_source, window_fallback)
        tables = materialize_features(con, runs)
        if not args.skip_demographics:
            extract_stay_tables(con)
    finally:
        con.close()

    print("\nExtraction completed successfully!")
    print(f"Feature tables written: {len(tables)}")
    for table in tables:
        print(f"  - {table}")

    print("\n--- Data Quality ---")
    print(quality_summary(runs).to_string(index=False))

    return runs


if __name__ == "__main__":
    main()
