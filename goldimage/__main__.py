import sys

from goldimage import cli

sys.exit(cli.main())
