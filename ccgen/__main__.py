"""Allow ``python -m ccgen``."""

import sys

from ccgen.main import main

if __name__ == "__main__":
    sys.exit(main())
