#!/usr/bin/env python3
"""Print a fresh WALLET_ENCRYPTION_KEY.

Usage:
    python scripts/generate_master_key.py >> .env

Store the value in a secret manager. Losing it makes every custodial key
unrecoverable; rotating it requires re-encrypting all wallets.
"""

import sys
from pathlib import Path

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from custodex.crypto import generate_master_key


def main():
    print(f"WALLET_ENCRYPTION_KEY={generate_master_key()}")


if __name__ == "__main__":
    main()
