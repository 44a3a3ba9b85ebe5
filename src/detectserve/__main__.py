import sys

from detectserve.cli import main

sys.exit(main())
