import sys

from uiembed.cli import main

sys.exit(main())
