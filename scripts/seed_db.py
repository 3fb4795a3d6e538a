"""Seed a local escrow database with demo users, a shop and products.

Prints a bearer token for every demo user so the API and the chat socket
can be exercised straight away.
"""
import asyncio
import os
import sys
from decimal import Decimal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import select

from rekber.core.auth import create_access_token
from rekber.database import async_session, init_db
from rekber.models.product import Product
from rekber.models.user import Merchant, User

DEMO_USERS = [
    {"username": "demo_buyer", "email": "buyer@rekber.local", "role": "buyer"},
    {"username": "demo_seller", "email": "seller@rekber.local", "role": "merchant"},
    {"username": "demo_admin", "email": "admin@rekber.local", "role": "admin"},
]

DEMO_PRODUCTS = [
    {"name": "Akun game level 80", "price": Decimal("150000"), "stock": 5},
    {"name": "Voucher pulsa 100k", "price": Decimal("101500"), "stock": 50},
    {"name": "Jasa joki rank mingguan", "price": Decimal("250000"), "stock": 3},
]


async def seed():
    await init_db()
    async with async_session() as db:
        print("=== Seeding rekber escrow demo data ===\n")

        users = {}
        for config in DEMO_USERS:
            existing = (
                await db.execute(select(User).where(User.username == config["username"]))
            ).scalar_one_or_none()
            if existing is not None:
                users[config["role"]] = existing
                print(f"  Exists: {config['username']} (ID: {existing.id})")
                continue
            user = User(**config)
            db.add(user)
            await db.flush()
            users[config["role"]] = user
            print(f"  Created: {config['username']} (ID: {user.id}, role: {config['role']})")

        owner = users["merchant"]
        merchant = (
            await db.execute(select(Merchant).where(Merchant.user_id == owner.id))
        ).scalar_one_or_none()
        if merchant is None:
            merchant = Merchant(user_id=owner.id, shop_name="Toko Demo")
            db.add(merchant)
            await db.flush()
            for config in DEMO_PRODUCTS:
                db.add(Product(merchant_id=merchant.id, **config))
                print(f"  Listed: {config['name']} (Rp{config['price']:,}, stock {config['stock']})")
        await db.commit()

        print("\n=== Bearer tokens ===")
        for role, user in users.items():
            print(f"  {role:<9} {create_access_token(user.id, user.role)}")


if __name__ == "__main__":
    asyncio.run(seed())
