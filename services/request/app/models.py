"""
Request Service — ドメインモデル

ストアのドキュメント(dict)は境界でここの型付きレコードにデコードする。
未知のフィールドは捨て、形の合わないドキュメントは ValidationError で拒否する。

状態遷移:
    (なし)  → PENDING    (クライアントが作成)
    PENDING → APPROVED   (在庫が足りる場合のみ。終端)
    PENDING → REJECTED   (終端)
    PENDING → (削除)     (キャンセル / リーパー)
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field, model_validator


class RequestState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Product(BaseModel):
    """在庫ストア上の商品。このサービスが書くのは quantity だけ。"""

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    quantity: int
    company_id: str | None = None
    name: str | None = None
    updated_at: datetime | None = None


class Request(BaseModel):
    """
    商品リクエスト。product_name / unit_price / quantity は作成時点のスナップショット。
    """

    model_config = ConfigDict(frozen=True, extra="ignore", use_enum_values=True)

    id: str
    client_id: str
    company_id: str
    product_id: str
    product_name: str
    unit_price: float = Field(ge=0)
    quantity: int = Field(gt=0)
    state: RequestState
    requested_at: datetime
    responded_at: datetime | None = None

    @model_validator(mode="after")
    def _check_responded_at(self) -> "Request":
        pending = self.state == RequestState.PENDING
        if pending != (self.responded_at is None):
            raise ValueError("responded_at must be set iff the request is resolved")
        return self

    @property
    def is_pending(self) -> bool:
        return self.state == RequestState.PENDING

    @property
    def can_cancel(self) -> bool:
        return self.is_pending

    @computed_field
    @property
    def total_price(self) -> float:
        return self.unit_price * self.quantity

    @classmethod
    def from_document(cls, doc: dict) -> "Request":
        return cls.model_validate(doc)

    def to_document(self) -> dict:
        # total_price は API 応答用。ストアには保存しない
        return self.model_dump(exclude={"total_price"})
