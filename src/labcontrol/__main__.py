import sys

from labcontrol.cli import main

sys.exit(main())
