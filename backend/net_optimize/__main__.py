import sys

from net_optimize.main import main

sys.exit(main())
