import sys

from flexfuse.cli import main

sys.exit(main())
