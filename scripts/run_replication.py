"""
Script to run listing replication (same options as the listing-replicator command)
"""

import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from replication.cli import main


if __name__ == "__main__":
    sys.exit(main())
