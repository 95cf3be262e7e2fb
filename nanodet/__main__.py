import sys

from nanodet.cli import main

sys.exit(main())
