import asyncio
import logging
import sys

from nutmelt import LNURLInvoiceProvider, Melter

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


async def main(token: str) -> None:
    provider = LNURLInvoiceProvider("user@getalby.com")
    async with Melter(provider) as melter:
        # Quote every mint in the token; nothing is spent yet
        summary = await melter.summarize(token)
        print(f"Receive {summary.total_amount} sats, fee reserve {summary.total_fees} sats")

        # Pay out
        result = await melter.execute(summary)
        print(f"\n✓ Received {result.amount} sats!")
    await provider.aclose()


if __name__ == "__main__":
    asyncio.run(main(sys.argv[1]))
