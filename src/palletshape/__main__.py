"""Allow ``python -m palletshape`` to run the shape backfill."""

import sys

from palletshape.cli import main

sys.exit(main())
