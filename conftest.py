# Puts the repo root on sys.path so tests import sheet_aggregator without an install.
