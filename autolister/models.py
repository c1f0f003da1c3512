from typing import Any
from datetime import datetime
import uuid

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, Text, Uuid, true
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


# Postgres에서는 JSONB, 그 외(SQLite 테스트 등)에서는 JSON
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Product(Base):
    """
    리셀러 상품 카드. AI 생성으로 채워지는 속성과 오토파일럿 QC 상태를 함께 보관합니다.
    """
    __tablename__ = "products"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    sku: Mapped[str | None] = mapped_column(Text, nullable=True)

    # new, generated, ready_for_shopify, created_in_shopify, error
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new", server_default="new")
    raw_input_text: Mapped[str | None] = mapped_column(Text, nullable=True)

    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_style_a: Mapped[str | None] = mapped_column(Text, nullable=True)
    description_style_b: Mapped[str | None] = mapped_column(Text, nullable=True)
    shopify_tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    etsy_tags: Mapped[str | None] = mapped_column(Text, nullable=True)
    collections_tags: Mapped[str | None] = mapped_column(Text, nullable=True)

    price: Mapped[float | None] = mapped_column(Float, nullable=True)
    currency: Mapped[str] = mapped_column(Text, nullable=False, default="GBP", server_default="GBP")

    era: Mapped[str | None] = mapped_column(Text, nullable=True)  # 80s, 90s, Y2K, Modern
    garment_type: Mapped[str | None] = mapped_column(Text, nullable=True)
    department: Mapped[str | None] = mapped_column(Text, nullable=True)  # Women, Men, Unisex, Kids
    brand: Mapped[str | None] = mapped_column(Text, nullable=True)
    colour_main: Mapped[str | None] = mapped_column(Text, nullable=True)
    colour_secondary: Mapped[str | None] = mapped_column(Text, nullable=True)
    pattern: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_label: Mapped[str | None] = mapped_column(Text, nullable=True)
    size_recommended: Mapped[str | None] = mapped_column(Text, nullable=True)
    pit_to_pit: Mapped[str | None] = mapped_column(Text, nullable=True)
    fit: Mapped[str | None] = mapped_column(Text, nullable=True)
    material: Mapped[str | None] = mapped_column(Text, nullable=True)
    condition: Mapped[str | None] = mapped_column(Text, nullable=True)  # Excellent, Very good, Good, Fair
    flaws: Mapped[str | None] = mapped_column(Text, nullable=True)
    made_in: Mapped[str | None] = mapped_column(Text, nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Autopilot QC
    run_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("autopilot_runs.id"), nullable=True, index=True)
    qc_status: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    flags: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    batch_number: Mapped[int | None] = mapped_column(Integer, nullable=True)
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    images: Mapped[list["ProductImage"]] = relationship(back_populates="product", order_by="ProductImage.position")


class ProductImage(Base):
    __tablename__ = "product_images"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    product_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey("products.id"), nullable=True, index=True)
    url: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    include_in_shopify: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=true())
    # 촬영 시점에 입력된 메모 (업로드 시 이미지 레코드에 함께 저장)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    product: Mapped[Product | None] = relationship(back_populates="images")


class AutopilotRun(Base):
    """
    배치 단위 오토파일럿 실행 기록. 외부 워커가 processed_cards 를 진행시킵니다.
    """
    __tablename__ = "autopilot_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    # running, awaiting_qc, publishing, completed, failed
    status: Mapped[str] = mapped_column(Text, nullable=False, default="running", server_default="running")
    batch_size: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    total_cards: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_cards: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_batch: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class DefaultTag(Base):
    __tablename__ = "default_tags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tag_name: Mapped[str] = mapped_column(Text, nullable=False)
    assigned_garment_types: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
