import sys

from pufreader.cli import main

sys.exit(main())
