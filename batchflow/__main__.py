"""Allow ``python -m batchflow``."""

import sys

from batchflow.cli import main

sys.exit(main())
