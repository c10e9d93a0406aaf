import sys

from sysupdate_dl.cli import main

sys.exit(main())
