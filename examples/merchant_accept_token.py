import asyncio
import sys
from dotenv import load_dotenv
from nutjar import Wallet, WalletError, decode
from nutjar.config import Settings


async def accept_payment(token: str, trusted_mint: str):
    """Accept a Cashu token, but only from the mint we trust."""
    load_dotenv()
    settings = Settings.from_env()

    async with await Wallet.open(settings.data_dir, [trusted_mint], settings=settings) as wallet:
        parsed = decode(token)
        original_amount = sum(p["amount"] for p in parsed.proofs)

        print(f"Token from: {parsed.mint_url}")
        print(f"Amount: {original_amount} {parsed.unit}")

        # Tokens from other mints raise UnknownMint
        amount = await wallet.receive_token(token)

        fees = original_amount - amount
        print(f"\nReceived: {amount} {parsed.unit}")
        if fees > 0:
            print(f"Mint fees: {fees} {parsed.unit}")

        return amount


async def main():
    """Main example."""
    TRUSTED_MINT = "https://mint.minibits.cash/Bitcoin"

    if len(sys.argv) < 2:
        print("Usage: python merchant_accept_token.py <cashu_token>")
        return

    try:
        await accept_payment(sys.argv[1], TRUSTED_MINT)
        print("\n✅ Payment successful!")
    except WalletError as e:
        print(f"\n❌ Payment failed: {e}")


if __name__ == "__main__":
    asyncio.run(main())
