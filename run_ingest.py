#!/usr/bin/env python3
"""Run the ingestion job from the command line.

Examples:
    python run_ingest.py --config nirload.yaml run
    python run_ingest.py --config nirload.yaml cleanup
    python run_ingest.py inspect exports/batch_01.xlsx --header_row 2
"""

import sys

from nirload.workflow import main

if __name__ == "__main__":
    sys.exit(main())
