import sys

from disperse.cli import main

sys.exit(main())
