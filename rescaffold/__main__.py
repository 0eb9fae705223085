"""Allow ``python -m rescaffold``."""

import sys

from rescaffold.cli import main

sys.exit(main())
