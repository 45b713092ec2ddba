import sys

from paramarchive.cli import main

sys.exit(main())
