"""User directory backed by the identity provider's profile data"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from database import managed_session
from models import User
from utils.helpers import normalize_address
from utils.otc_errors import DuplicateActionError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self.session_factory = session_factory

    def register_user(self, user_id: str, handle: str, name: Optional[str] = None,
                      wallet_address: Optional[str] = None, is_verified: bool = False) -> User:
        """Create the local profile row for an identity-provider user"""
        if not user_id or not handle:
            raise ValidationError("user id and handle are required")
        handle = handle.lstrip("@").strip()
        try:
            with managed_session(self.session_factory) as session:
                user = User(
                    id=user_id,
                    handle=handle,
                    name=name,
                    wallet_address=normalize_address(wallet_address),
                    is_verified=is_verified,
                )
                session.add(user)
                session.flush()
            logger.info(f"👤 USER_REGISTERED: {user_id} (@{handle})")
            return user
        except IntegrityError:
            raise DuplicateActionError(
                f"User {user_id} or handle @{handle} already exists",
                existing=self.find_user(user_id),
            )

    def find_user(self, user_id: str) -> Optional[User]:
        with managed_session(self.session_factory) as session:
            return session.get(User, user_id)

    def get_user(self, user_id: str) -> User:
        user = self.find_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return user

    def get_by_handle(self, handle: str) -> User:
        with managed_session(self.session_factory) as session:
            user = session.execute(
                select(User).where(User.handle == handle.lstrip("@"))
            ).scalar_one_or_none()
        if user is None:
            raise NotFoundError(f"User @{handle} not found")
        return user

    def update_wallet_address(self, user_id: str, wallet_address: str) -> User:
        with managed_session(self.session_factory) as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found")
            user.wallet_address = normalize_address(wallet_address)
            logger.info(f"👛 WALLET_LINKED: {user_id} -> {user.wallet_address}")
            return user
