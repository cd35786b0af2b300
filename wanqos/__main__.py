import sys

from wanqos.cli import main

sys.exit(main())
