import asyncio
import os
from dotenv import load_dotenv
from nutjar import LocalKeySigner, Wallet
from nutjar.config import Settings


async def main():
    load_dotenv()
    settings = Settings.from_env()
    if not settings.mint_urls:
        print("Error: CASHU_MINTS environment variable not set. Please create a .env file.")
        return

    nsec = os.getenv("NSEC")
    signer = LocalKeySigner(nsec) if nsec else None

    async with await Wallet.open(
        settings.data_dir, settings.mint_urls, signer=signer, settings=settings
    ) as wallet:
        # Check balance
        print(f"Balance: {wallet.balance()} sats")

        # Mint 10 sats
        invoice = await wallet.create_invoice(10)
        print(f"\nPay this invoice:\n{invoice.invoice}")

        while not await wallet.check_and_claim(invoice.quote_id):
            await asyncio.sleep(2)
        print("\n✓ Payment received!")

        # Send 5 sats
        token = await wallet.send_token(5)
        print(f"\nCashu token:\n{token}")
        print(f"\nRemaining balance: {wallet.balance()} sats")


if __name__ == "__main__":
    asyncio.run(main())
