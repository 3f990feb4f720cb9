from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import joinedload

from errors import ConflictError, NotFoundError, UnauthorizedError, ValidationError
from models import Category, RefreshToken, Transaction, TransactionType, User
from periods import utc_now
from schemas import (
    AuthOut,
    CategoryIn,
    CategoryUpdateIn,
    LoginIn,
    RegisterIn,
    TokenPairOut,
    TransactionIn,
    TransactionUpdateIn,
    UserOut,
)
from security import TokenSigner, hash_password, verify_password

logger = logging.getLogger(__name__)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class AuthService:
    def __init__(self, session: AsyncSession, signer: TokenSigner) -> None:
        self.session = session
        self.signer = signer

    async def _find_user_by_email(self, email: str) -> Optional[User]:
        return await self.session.scalar(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )

    async def _issue_tokens(self, user: User) -> TokenPairOut:
        access_token = self.signer.sign_access_token(user.id, user.email)
        refresh_token = self.signer.sign_refresh_token(user.id, user.email)
        self.session.add(
            RefreshToken(
                user_id=user.id,
                token=refresh_token,
                expires_at=utc_now() + timedelta(seconds=self.signer.refresh_ttl_secs),
            )
        )
        return TokenPairOut(access_token=access_token, refresh_token=refresh_token)

    async def register(self, data: RegisterIn) -> AuthOut:
        if await self._find_user_by_email(data.email):
            raise ConflictError("Email already registered")
        user = User(
            email=data.email.strip().lower(),
            password_hash=hash_password(data.password),
            name=data.name.strip(),
        )
        self.session.add(user)
        await self.session.flush()
        tokens = await self._issue_tokens(user)
        await self.session.commit()
        logger.info(f"user_registered: user_id={user.id}")
        return AuthOut(
            user=UserOut.model_validate(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )

    async def login(self, data: LoginIn) -> AuthOut:
        user = await self._find_user_by_email(data.email)
        if not user or not verify_password(data.password, user.password_hash):
            raise UnauthorizedError("Invalid credentials")
        await self.session.execute(
            delete(RefreshToken).where(RefreshToken.user_id == user.id)
        )
        tokens = await self._issue_tokens(user)
        await self.session.commit()
        logger.info(f"user_logged_in: user_id={user.id}")
        return AuthOut(
            user=UserOut.model_validate(user),
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
        )

    async def refresh(self, refresh_token: str) -> TokenPairOut:
        payload = self.signer.verify_refresh_token(refresh_token)
        stored = await self.session.scalar(
            select(RefreshToken).where(RefreshToken.token == refresh_token)
        )
        if not stored:
            raise UnauthorizedError("Invalid refresh token")
        await self.session.delete(stored)
        if stored.expires_at < utc_now():
            await self.session.commit()
            raise UnauthorizedError("Refresh token expired")
        await self.session.flush()

        user = await self.session.get(User, payload.user_id)
        if not user:
            await self.session.commit()
            raise UnauthorizedError("User not found")
        tokens = await self._issue_tokens(user)
        await self.session.commit()
        return tokens

    async def purge_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        result = await self.session.execute(
            delete(RefreshToken).where(RefreshToken.expires_at < now)
        )
        await self.session.commit()
        return result.rowcount or 0


class CategoryService:
    def __init__(self, session: AsyncSession, user_id: uuid.UUID) -> None:
        self.session = session
        self.user_id = user_id

    async def _find_by_name(self, name: str) -> Optional[Category]:
        return await self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id, Category.name == name
            )
        )

    async def list_all(self, type: Optional[TransactionType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return list((await self.session.scalars(stmt)).all())

    async def get(self, category_id: uuid.UUID) -> Category:
        category = await self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    async def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        if await self._find_by_name(name):
            raise ConflictError("Category with this name already exists")
        category = Category(
            user_id=self.user_id, name=name, color=data.color, type=data.type
        )
        self.session.add(category)
        await self.session.commit()
        await self.session.refresh(category)
        return category

    async def update(self, category_id: uuid.UUID, data: CategoryUpdateIn) -> Category:
        category = await self.get(category_id)
        if data.name is not None:
            name = data.name.strip()
            if name != category.name and await self._find_by_name(name):
                raise ConflictError("Category with this name already exists")
            category.name = name
        if data.color is not None:
            category.color = data.color
        if data.type is not None and data.type != category.type:
            in_use = await self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
            )
            if in_use:
                raise ValidationError(
                    "Cannot change the type of a category with transactions"
                )
            category.type = data.type
        await self.session.commit()
        await self.session.refresh(category)
        return category

    async def delete(self, category_id: uuid.UUID) -> None:
        category = await self.get(category_id)
        in_use = await self.session.scalar(
            select(func.count(Transaction.id)).where(
                Transaction.user_id == self.user_id,
                Transaction.category_id == category.id,
            )
        )
        if in_use:
            raise ConflictError("Category is used by existing transactions")
        await self.session.delete(category)
        await self.session.commit()


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[uuid.UUID] = None
    query: Optional[str] = None


@dataclass
class TransactionPageResult:
    items: list[Transaction]
    total: int
    page: int
    limit: int
    total_pages: int


class TransactionService:
    def __init__(self, session: AsyncSession, user_id: uuid.UUID) -> None:
        self.session = session
        self.user_id = user_id

    async def _category_for(self, category_id: uuid.UUID) -> Category:
        category = await self.session.scalar(
            select(Category).where(
                Category.id == category_id, Category.user_id == self.user_id
            )
        )
        if not category:
            raise NotFoundError("Category not found")
        return category

    async def create(self, data: TransactionIn) -> Transaction:
        category = await self._category_for(data.category_id)
        if category.type != data.type:
            raise ValidationError("Transaction type must match category type")
        txn = Transaction(
            user_id=self.user_id,
            category_id=category.id,
            amount=data.amount,
            description=data.description,
            type=data.type,
            is_recurring=data.is_recurring,
            date=to_naive_utc(data.date),
        )
        self.session.add(txn)
        await self.session.commit()
        return await self.get(txn.id)

    async def get(self, transaction_id: uuid.UUID) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
            .execution_options(populate_existing=True)
        )
        txn = await self.session.scalar(stmt)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    async def list(
        self,
        filters: TransactionFilters,
        *,
        sort: str = "newest",
        page: int = 1,
        limit: int = 10,
    ) -> TransactionPageResult:
        conditions = [Transaction.user_id == self.user_id]
        if filters.type:
            conditions.append(Transaction.type == filters.type)
        if filters.category_id:
            conditions.append(Transaction.category_id == filters.category_id)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            conditions.append(func.lower(Transaction.description).like(like))

        order = (
            (Transaction.date.desc(), Transaction.id.desc())
            if sort == "newest"
            else (Transaction.date.asc(), Transaction.id.asc())
        )
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category))
            .where(*conditions)
            .order_by(*order)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = list((await self.session.scalars(stmt)).all())
        total = await self.session.scalar(
            select(func.count(Transaction.id)).where(*conditions)
        )
        total = int(total or 0)
        return TransactionPageResult(
            items=items,
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if limit else 0,
        )

    async def update(
        self, transaction_id: uuid.UUID, data: TransactionUpdateIn
    ) -> Transaction:
        txn = await self.get(transaction_id)
        target_type = data.type or txn.type
        if data.category_id is not None:
            category = await self._category_for(data.category_id)
        else:
            category = txn.category
        if category is not None and category.type != target_type:
            raise ValidationError("Transaction type must match category type")

        if data.category_id is not None:
            txn.category_id = data.category_id
        if data.amount is not None:
            txn.amount = data.amount
        if data.description is not None:
            txn.description = data.description
        if data.type is not None:
            txn.type = data.type
        if data.is_recurring is not None:
            txn.is_recurring = data.is_recurring
        if data.date is not None:
            txn.date = to_naive_utc(data.date)
        await self.session.commit()
        return await self.get(txn.id)

    async def delete(self, transaction_id: uuid.UUID) -> None:
        txn = await self.get(transaction_id)
        await self.session.delete(txn)
        await self.session.commit()
