"""
Customer Service — 顧客リポジトリ

顧客の登録・参照・検索・更新・論理削除。
メールアドレスの重複は削除されていない顧客の間でのみチェックし、
同時登録は部分一意インデックス (uq_customers_active_email) で弾く。
"""

from sqlalchemy import insert, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import CustomerNotFound, DuplicateEmail
from .schema import customers, isoformat, utcnow

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

_active = customers.c.deleted_at.is_(None)


def _to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "email": row.email,
        "phone": row.phone,
        "created_at": isoformat(row.created_at),
        "updated_at": isoformat(row.updated_at),
    }


async def get_customer(session: AsyncSession, customer_id: int) -> dict | None:
    result = await session.execute(
        select(customers).where(customers.c.id == customer_id, _active)
    )
    row = result.first()
    return _to_dict(row) if row else None


async def find_by_email(session: AsyncSession, email: str) -> dict | None:
    result = await session.execute(
        select(customers).where(customers.c.email == email, _active)
    )
    row = result.first()
    return _to_dict(row) if row else None


async def create_customer(
    session: AsyncSession,
    name: str,
    email: str,
    phone: str | None = None,
) -> dict:
    try:
        async with session.begin():
            if await find_by_email(session, email):
                raise DuplicateEmail(email)

            now = utcnow()
            result = await session.execute(
                insert(customers).values(
                    name=name,
                    email=email,
                    phone=phone or None,
                    created_at=now,
                    updated_at=now,
                )
            )
            return await get_customer(session, result.inserted_primary_key[0])
    except IntegrityError as e:
        raise DuplicateEmail(email) from e


async def update_customer(
    session: AsyncSession,
    customer_id: int,
    name: str | None = None,
    email: str | None = None,
    phone: str | None = None,
) -> dict:
    values = {
        k: v
        for k, v in {"name": name, "email": email, "phone": phone}.items()
        if v is not None
    }

    try:
        async with session.begin():
            if email:
                existing = await find_by_email(session, email)
                if existing and existing["id"] != customer_id:
                    raise DuplicateEmail(email)

            values["updated_at"] = utcnow()
            result = await session.execute(
                update(customers)
                .where(customers.c.id == customer_id, _active)
                .values(**values)
            )
            if result.rowcount == 0:
                raise CustomerNotFound(customer_id)
            return await get_customer(session, customer_id)
    except IntegrityError as e:
        raise DuplicateEmail(email) from e


async def delete_customer(session: AsyncSession, customer_id: int) -> None:
    """論理削除。既に削除済みなら CustomerNotFound。"""
    async with session.begin():
        result = await session.execute(
            update(customers)
            .where(customers.c.id == customer_id, _active)
            .values(deleted_at=utcnow())
        )
        if result.rowcount == 0:
            raise CustomerNotFound(customer_id)


async def search_customers(
    session: AsyncSession,
    search: str = "",
    cursor: int = 0,
    limit: int = DEFAULT_PAGE_SIZE,
) -> dict:
    """名前・メール・電話番号の部分一致で検索する。"""
    offset = max(0, cursor)
    page_limit = min(max(1, limit), MAX_PAGE_SIZE)

    query = select(customers).where(_active)
    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.where(
            or_(
                customers.c.name.like(pattern),
                customers.c.email.like(pattern),
                customers.c.phone.like(pattern),
            )
        )
    query = query.order_by(customers.c.id.desc()).limit(page_limit).offset(offset)

    result = await session.execute(query)
    rows = [_to_dict(row) for row in result.fetchall()]
    return {
        "data": rows,
        "cursor": offset + len(rows),
        "hasMore": len(rows) == page_limit,
    }
