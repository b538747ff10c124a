#!/usr/bin/env python

import sys
import os

# Ensure the project root is in the Python path so the myrepo package resolves
project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Now import and run the main function from the myrepo package
try:
    from myrepo.main import main as run_sync
except ImportError as e:
    print(f"Error: Could not import the synchronizer. Is the 'myrepo' directory available?", file=sys.stderr)
    print(f"Details: {e}", file=sys.stderr)
    sys.exit(1)


if __name__ == "__main__":
    # Execute the synchronization and exit with its status code
    sys.exit(run_sync())
