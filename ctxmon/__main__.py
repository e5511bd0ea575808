import sys

from ctxmon.cli import main

sys.exit(main())
