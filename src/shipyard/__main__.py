import sys

from shipyard.cli import main

raise SystemExit(main(sys.argv[1:]))
