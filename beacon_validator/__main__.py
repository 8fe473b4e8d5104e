import sys

from beacon_validator.cli import main

sys.exit(main())
