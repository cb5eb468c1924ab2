"""
Game: catalog item. Upstream-sourced games carry external_product_id;
price / in_stock / last_sync_at are owned by the catalog sync and the reconciler.
Games are never deleted by the core: a product that vanished upstream is only marked out of stock.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)

from app.db.base import Base


game_categories = Table(
    "game_categories",
    Base.metadata,
    Column("game_id", String, ForeignKey("games.id", ondelete="CASCADE"), primary_key=True),
    Column("category_id", String, ForeignKey("categories.id", ondelete="CASCADE"), primary_key=True),
)

game_genres = Table(
    "game_genres",
    Base.metadata,
    Column("game_id", String, ForeignKey("games.id", ondelete="CASCADE"), primary_key=True),
    Column("genre_id", String, ForeignKey("genres.id", ondelete="CASCADE"), primary_key=True),
)

game_platforms = Table(
    "game_platforms",
    Base.metadata,
    Column("game_id", String, ForeignKey("games.id", ondelete="CASCADE"), primary_key=True),
    Column("platform_id", String, ForeignKey("platforms.id", ondelete="CASCADE"), primary_key=True),
)


class Game(Base):
    __tablename__ = "games"
    __table_args__ = (CheckConstraint("price >= 0", name="ck_games_price_non_negative"),)

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    name = Column(String, nullable=False)
    slug = Column(String, unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)
    external_product_id = Column(String, unique=True, nullable=True, index=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    original_price = Column(Numeric(12, 2), nullable=True)
    in_stock = Column(Boolean, nullable=False, default=True)
    external_stock = Column(Integer, nullable=True)      # last observed upstream quantity
    image_url = Column(String, nullable=True)
    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
