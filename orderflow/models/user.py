from sqlalchemy import Column, DateTime, String, func
from .base import Base


class User(Base):
    __tablename__ = "user"

    id = Column(String(36), primary_key=True)
    email = Column(String(255), nullable=True, unique=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(64), nullable=True)
    role = Column(String(32), nullable=False, default="customer")  # customer / staff / admin / system
    chat_contact_id = Column(String(64), nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    @property
    def is_privileged(self) -> bool:
        return self.role in ("staff", "admin", "system")

    def to_dict(self):
        return {"id": self.id, "email": self.email, "name": self.name, "phone": self.phone, "role": self.role}
