# main.py
# Process entry point: python main.py [--config tcm.json] [run|once|keepset|render]
from __future__ import annotations

import sys

from cardinality.bootstrap import main

if __name__ == "__main__":
    sys.exit(main())
