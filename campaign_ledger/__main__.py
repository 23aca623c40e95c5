"""Allow running as: python -m campaign_ledger"""

import sys

from .cli import main

sys.exit(main())
