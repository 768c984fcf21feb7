import asyncio
import os
import sys

from dailyplate.helpers import now_ts
from dailyplate.model import new_store
from dailyplate.model.orm import (
    Product, DailyCapacity, Setting, Profile, RouteDay,
)

# Config
FRETE_VALOR = "7.00"
CAPACITY_PER_DAY = 40

PRODUCTS = [
    Product(id=1, nome="Marmita Frango Grelhado", preco=2290, ativo=True),
    Product(id=2, nome="Marmita Carne de Panela", preco=2590, ativo=True),
    Product(id=3, nome="Marmita Vegana", preco=2190, ativo=True),
]

ROUTES = {
    "Campinas": [2, 4],
    "Valinhos": [3],
    "Vinhedo": [5],
}


def fixtures(admin_id: str | None):
    # products go in first (see seed); these rows reference them
    rows = [Setting(key="frete_valor", value=FRETE_VALOR)]
    for cidade, days in ROUTES.items():
        for dia in days:
            rows.append(RouteDay(cidade=cidade, dia_semana=dia, ativo=True,
                                 created_at=now_ts()))
    for dia in range(1, 8):
        for p in PRODUCTS:
            rows.append(DailyCapacity(dia_semana=dia, product_id=p.id,
                                      limite_total=CAPACITY_PER_DAY))
    if admin_id:
        rows.append(Profile(id=admin_id, nome="Admin", role="admin"))
    return rows


async def seed(database_url: str, admin_id: str | None) -> None:
    store = new_store(database_url)
    try:
        await store.create_schema()
        await store.add_all(PRODUCTS)
        await store.add_all(fixtures(admin_id))
    finally:
        await store.close()
    print('✅ catalog, routes, capacity and settings created')


if __name__ == '__main__':
    url = os.environ.get("DATABASE_URL")
    if not url:
        print("NEED DATABASE_URL!")
        sys.exit(1)
    asyncio.run(seed(url, os.environ.get("ADMIN_USER_ID")))
