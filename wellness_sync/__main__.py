"""python -m wellness_sync"""

import sys

from wellness_sync.main import main

sys.exit(main())
