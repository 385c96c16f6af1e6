"""
商品模型
商品 -> 款式 (variant) -> 尺寸 (size)，每層都可以有自己的庫存計數
"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.orm import relationship
from .base import Base


class Product(Base):
    __tablename__ = "product"

    id = Column(String(36), primary_key=True)
    organization_id = Column(String(36), nullable=True, index=True)
    code = Column(String(64), nullable=True, unique=True)  # 聊天下單用的商品代碼
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    inventory_type = Column(String(16), nullable=False, default="STOCK")  # STOCK / PREORDER
    inventory = Column(Integer, nullable=True)  # 彙總庫存
    min_price = Column(Numeric(12, 2), nullable=True)
    max_price = Column(Numeric(12, 2), nullable=True)
    supposed_price = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=False, default="PHP")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    variants = relationship(
        "ProductVariant",
        back_populates="product",
        cascade="all, delete-orphan",
        order_by="ProductVariant.sort_order",
    )

    def get_variant(self, variant_id):
        return next((v for v in self.variants if v.id == variant_id), None)


class ProductVariant(Base):
    """商品款式（例如：顏色）"""
    __tablename__ = "product_variant"

    id = Column(String(36), primary_key=True)
    product_id = Column(String(36), ForeignKey("product.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(128), nullable=False)
    price = Column(Numeric(12, 2), nullable=True)
    inventory = Column(Integer, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    sort_order = Column(Integer, nullable=False, default=0)

    product = relationship("Product", back_populates="variants")
    sizes = relationship(
        "ProductSize",
        back_populates="variant",
        cascade="all, delete-orphan",
        order_by="ProductSize.sort_order",
    )

    def get_size(self, size_id):
        return next((s for s in self.sizes if s.id == size_id), None)


class ProductSize(Base):
    """款式底下的尺寸，價格若有設定則覆蓋款式價格"""
    __tablename__ = "product_size"

    id = Column(String(36), primary_key=True)
    variant_id = Column(String(36), ForeignKey("product_variant.id", ondelete="CASCADE"), nullable=False)
    label = Column(String(64), nullable=False)
    price = Column(Numeric(12, 2), nullable=True)
    inventory = Column(Integer, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0)

    variant = relationship("ProductVariant", back_populates="sizes")
