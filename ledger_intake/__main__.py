import sys

from ledger_intake.cli import main

sys.exit(main())
