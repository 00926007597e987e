# =============================================================================
# idlewatch Entry Point for `python -m idlewatch`
# =============================================================================
# This module allows idlewatch to be run as a Python module:
#
#   python -m idlewatch manager --all
#
# The manager spawns its listener processes this way.
# =============================================================================

import sys

from idlewatch.app import main

if __name__ == "__main__":
    sys.exit(main())
