"""Bundled CDC reference data (``cdc_reference.csv``, built by scripts/download_data.py)."""
