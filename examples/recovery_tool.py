#!/usr/bin/env python3
"""
Finish operations interrupted by a crash or a lost mint response.

Every mint request the wallet makes is logged before it is sent. This tool
lists what is still open, asks the mints how each one ended and updates the
wallet accordingly.
"""

import asyncio
import sys
from dotenv import load_dotenv
from nutjar import Wallet, WalletError
from nutjar.config import Settings


async def main():
    load_dotenv()
    settings = Settings.from_env()

    try:
        wallet = await Wallet.load(settings.data_dir, settings=settings)
    except WalletError as e:
        print(f"❌ {e}")
        sys.exit(1)

    async with wallet:
        pending = wallet.log.all()
        if not pending:
            print("✅ Nothing to recover")
            return

        print(f"Found {len(pending)} unresolved operations:")
        for tx in pending:
            print(f"  {tx.kind:<5} {tx.direction:<3} {tx.amount:>8} sat  {tx.mint_url}")

        before = wallet.balance()
        report = await wallet.recover_pending()

        print(f"\nRecovered: {report.recovered_count}")
        print(f"Failed:    {report.failed_count}")
        print(f"Pending:   {report.pending_count}")
        print(f"\nBalance: {before} -> {wallet.balance()} sats")


if __name__ == "__main__":
    asyncio.run(main())
