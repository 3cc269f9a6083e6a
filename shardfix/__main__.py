import sys

from shardfix.cli import main

sys.exit(main())
