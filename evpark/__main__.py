"""Allows `python -m evpark`"""

import sys

from .presentation.cli import main

sys.exit(main())
