import sys

from powersched.cli import main

sys.exit(main())
