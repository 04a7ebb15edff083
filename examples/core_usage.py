"""
Example usage of the firestore-lite client.

Run against the local emulator:

    export FIRESTORE_EMULATOR_HOST=localhost:8080
    export FIRESTORE_PROJECT_ID=demo-project
    python examples/core_usage.py
"""

import asyncio

from firestore_lite import Firestore, Transaction


async def main():
    async with Firestore() as db:
        print("=== Documents ===")
        alice = db.doc("users/alice")
        await alice.set({"name": "Alice", "balance": 100})
        await db.doc("users/bob").set({"name": "Bob", "balance": 20})

        snap = await alice.get()
        print(f"{snap.id}: {snap.to_dict()}")

        print("=== Transaction ===")

        async def transfer(tx: Transaction) -> int:
            src, dst = await tx.get_all(db.doc("users/alice"), db.doc("users/bob"))
            amount = 30
            tx.update(src.reference, {"balance": src.get("balance") - amount})
            tx.update(dst.reference, {"balance": dst.get("balance") + amount})
            return amount

        moved = await db.run_transaction(transfer)
        print(f"Moved {moved}")

        print("=== Query ===")
        for doc in await db.collection("users").where("balance", ">", 0).order_by("balance").get():
            print(f"{doc.id}: balance={doc.get('balance')}")

        print("=== Cleanup ===")
        await db.recursive_delete(db.collection("users"))
        print(f"Remaining: {len(await db.collection('users').list_documents())}")


if __name__ == "__main__":
    asyncio.run(main())
