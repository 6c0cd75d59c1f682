"""Allow running as ``python -m cast_index``."""

import sys

from cast_index.cli import main

sys.exit(main())
