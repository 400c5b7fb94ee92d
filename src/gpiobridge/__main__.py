import sys

from gpiobridge.cli import main

sys.exit(main())
