from __future__ import annotations
from contextlib import asynccontextmanager
from typing import (
    Any, AsyncContextManager, AsyncIterator, Callable, Dict, Iterable, List,
    Optional, Sequence,
)

from sqlalchemy import select, update, func, or_
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..helpers import now_ts
from .orm import (
    Base, Product, Order, OrderItem, DailyCapacity, Setting, Profile, RouteDay,
    PAID,
)

Gated = Callable[[], AsyncContextManager[None]]


def _as_dict(obj) -> Dict[str, Any]:
    return {c.name: getattr(obj, c.name) for c in obj.__table__.columns}


class OrderStore:
    """The only shared mutable resource. Every method is its own
    transaction and goes through the DB gate."""

    def __init__(
        self, *, engine: AsyncEngine,
        sessions: async_sessionmaker[AsyncSession], gated: Gated,
    ) -> None:
        self.engine = engine
        self.sessions = sessions
        self.gated = gated

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as session:
                async with session.begin():
                    yield session

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    async def add_all(self, rows: Iterable[Base]) -> None:
        # fixtures / back-office seeding
        async with self._tx() as s:
            s.add_all(list(rows))

    # ------------------------------------------------------------------
    # catalog / settings / routes (read-only for the core)
    # ------------------------------------------------------------------
    async def get_products(self, ids: Iterable[int]) -> Dict[int, Dict]:
        ids = list(ids)
        if not ids:
            return {}
        async with self._tx() as s:
            rows = (await s.execute(
                select(Product).where(Product.id.in_(ids))
            )).scalars().all()
            return {p.id: _as_dict(p) for p in rows}

    async def get_setting(self, key: str) -> Optional[str]:
        async with self._tx() as s:
            row = await s.get(Setting, key)
            return row.value if row else None

    async def get_role(self, user_id: str) -> Optional[str]:
        async with self._tx() as s:
            row = await s.get(Profile, user_id)
            return row.role if row else None

    async def active_routes(self) -> Dict[str, List[int]]:
        async with self._tx() as s:
            rows = (await s.execute(
                select(RouteDay.cidade, RouteDay.dia_semana)
                .where(RouteDay.ativo.is_(True))
            )).all()
        out: Dict[str, set] = {}
        for cidade, dia in rows:
            c = (cidade or "").strip()
            if c and 1 <= int(dia) <= 7:
                out.setdefault(c, set()).add(int(dia))
        return {c: sorted(days) for c, days in sorted(out.items())}

    async def is_route_active(self, cidade: str, dia_semana: int) -> bool:
        async with self._tx() as s:
            found = (await s.execute(
                select(RouteDay.id).where(
                    RouteDay.ativo.is_(True),
                    RouteDay.dia_semana == dia_semana,
                    func.lower(func.trim(RouteDay.cidade))
                    == cidade.strip().lower(),
                ).limit(1)
            )).first()
            return found is not None

    # ------------------------------------------------------------------
    # capacity
    # ------------------------------------------------------------------
    async def get_capacity(
        self, dia_semana: int, product_ids: Iterable[int]
    ) -> Dict[int, int]:
        async with self._tx() as s:
            rows = (await s.execute(
                select(DailyCapacity.product_id, DailyCapacity.limite_total)
                .where(
                    DailyCapacity.dia_semana == dia_semana,
                    DailyCapacity.product_id.in_(list(product_ids)),
                )
            )).all()
            return {int(pid): int(limit) for pid, limit in rows}

    async def sold_by_product(
        self, dia_semana: int, product_ids: Optional[Iterable[int]] = None
    ) -> Dict[int, int]:
        """Units on PAID orders for that weekday, per product."""
        q = (
            select(OrderItem.product_id, func.sum(OrderItem.quantidade))
            .join(Order, Order.id == OrderItem.order_id)
            .where(Order.status == PAID, Order.dia_semana == dia_semana)
            .group_by(OrderItem.product_id)
        )
        if product_ids is not None:
            q = q.where(OrderItem.product_id.in_(list(product_ids)))
        async with self._tx() as s:
            rows = (await s.execute(q)).all()
            return {int(pid): int(total or 0) for pid, total in rows}

    async def capacity_report(self, dia_semana: int) -> List[Dict[str, Any]]:
        async with self._tx() as s:
            caps = (await s.execute(
                select(DailyCapacity, Product.nome)
                .join(Product, Product.id == DailyCapacity.product_id)
                .where(DailyCapacity.dia_semana == dia_semana)
                .order_by(Product.nome)
            )).all()
        sold = await self.sold_by_product(dia_semana)
        report = []
        for cap, nome in caps:
            used = sold.get(cap.product_id, 0)
            report.append({
                "product_id": cap.product_id,
                "nome": nome,
                "limite_total": cap.limite_total,
                "vendidos": used,
                "restante": max(0, cap.limite_total - used),
            })
        return report

    # ------------------------------------------------------------------
    # orders
    # ------------------------------------------------------------------
    async def create_order(
        self, fields: Dict[str, Any], items: Sequence[Dict[str, Any]]
    ) -> str:
        # order and items commit together or not at all
        async with self._tx() as s:
            s.add(Order(**fields))
            await s.flush()
            s.add_all([
                OrderItem(order_id=fields["id"], **it) for it in items
            ])
        return fields["id"]

    async def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        async with self._tx() as s:
            row = await s.get(Order, order_id)
            return _as_dict(row) if row else None

    async def get_order_lines(self, order_id: str) -> List[Dict[str, Any]]:
        async with self._tx() as s:
            rows = (await s.execute(
                select(OrderItem, Product.nome, Product.image_url)
                .join(Product, Product.id == OrderItem.product_id)
                .where(OrderItem.order_id == order_id)
                .order_by(OrderItem.id)
            )).all()
        lines = []
        for item, nome, image_url in rows:
            d = _as_dict(item)
            d["nome"] = nome
            d["image_url"] = image_url
            lines.append(d)
        return lines

    async def set_preference_id(self, order_id: str, pref_id: str) -> bool:
        async with self._tx() as s:
            res = await s.execute(
                update(Order)
                .where(Order.id == order_id,
                       Order.mp_preference_id.is_(None))
                .values(mp_preference_id=pref_id, updated_at=now_ts())
            )
            return res.rowcount == 1

    async def apply_payment_status(
        self, order_id: str, status: str, payment_id: str,
        allowed_from: Sequence[str],
    ) -> bool:
        """Single conditional row update; False when the stored status
        moved out of `allowed_from` in the meantime."""
        async with self._tx() as s:
            res = await s.execute(
                update(Order)
                .where(Order.id == order_id,
                       Order.status.in_(list(allowed_from)))
                .values(status=status, mp_payment_id=payment_id,
                        updated_at=now_ts())
            )
            return res.rowcount == 1

    async def attach_payment_id(self, order_id: str, payment_id: str) -> bool:
        async with self._tx() as s:
            res = await s.execute(
                update(Order)
                .where(Order.id == order_id, Order.mp_payment_id.is_(None))
                .values(mp_payment_id=payment_id, updated_at=now_ts())
            )
            return res.rowcount == 1

    async def list_user_orders(
        self, user_id: str, limit: int = 50
    ) -> List[Dict[str, Any]]:
        async with self._tx() as s:
            rows = (await s.execute(
                select(Order).where(Order.user_id == user_id)
                .order_by(Order.created_at.desc()).limit(limit)
            )).scalars().all()
            return [_as_dict(o) for o in rows]

    async def list_orders(
        self, *, pay: Optional[str] = None, delivery: Optional[str] = None,
        cidade: Optional[str] = None, q: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        stmt = select(Order).order_by(Order.created_at.desc()).limit(limit)
        if pay:
            stmt = stmt.where(Order.status == pay)
        if delivery:
            stmt = stmt.where(Order.delivery_status == delivery)
        if cidade:
            stmt = stmt.where(Order.cidade == cidade)
        if q:
            needle = q.lower()
            stmt = stmt.where(or_(
                func.lower(Order.id).contains(needle, autoescape=True),
                func.lower(Order.cidade).contains(needle, autoescape=True),
                func.lower(Order.cep).contains(needle, autoescape=True),
                func.lower(Order.user_id).contains(needle, autoescape=True),
            ))
        async with self._tx() as s:
            orders = [_as_dict(o) for o in (await s.execute(stmt)).scalars()]
            if not orders:
                return []
            rows = (await s.execute(
                select(OrderItem, Product.nome, Product.image_url)
                .join(Product, Product.id == OrderItem.product_id)
                .where(OrderItem.order_id.in_([o["id"] for o in orders]))
                .order_by(OrderItem.id)
            )).all()
        by_order: Dict[str, List[Dict[str, Any]]] = {}
        for item, nome, image_url in rows:
            d = _as_dict(item)
            d["nome"] = nome
            d["image_url"] = image_url
            by_order.setdefault(item.order_id, []).append(d)
        for o in orders:
            o["items"] = by_order.get(o["id"], [])
        return orders

    async def update_delivery(
        self, order_id: str, delivery_status: str, notes: str,
        mark_delivered: bool = False,
    ) -> Optional[Dict[str, Any]]:
        values: Dict[str, Any] = {
            "delivery_status": delivery_status,
            "delivery_notes": notes,
            "updated_at": now_ts(),
        }
        if mark_delivered:
            values["delivered_at"] = now_ts()
        async with self._tx() as s:
            res = await s.execute(
                update(Order).where(Order.id == order_id).values(**values)
            )
            if res.rowcount != 1:
                return None
            row = await s.get(Order, order_id)
            return {
                "id": row.id,
                "delivery_status": row.delivery_status,
                "delivery_notes": row.delivery_notes,
                "delivered_at": row.delivered_at,
            }
