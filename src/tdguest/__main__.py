import sys

from tdguest.cli import main

sys.exit(main())
