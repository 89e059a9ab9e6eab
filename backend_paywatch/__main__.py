"""Run the PayWatch monitor: python -m backend_paywatch"""

import sys

from backend_paywatch.runtime import main

if __name__ == "__main__":
    sys.exit(main())
