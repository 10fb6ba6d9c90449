import sys

from virus.cli import main

sys.exit(main())
