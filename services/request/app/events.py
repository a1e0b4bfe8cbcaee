"""
Request Service — イベント定義

リクエストの変化を通知するイベント。ChangeFeed に
{"event_type": <クラス名>, "data": <フィールド>} として発行される。
client_id と company_id は必ず含める（ライブビューの振り分けに使う）。
"""

from datetime import datetime

from pydantic import BaseModel


class RequestEvent(BaseModel):
    request_id: str
    client_id: str
    company_id: str
    timestamp: datetime


class RequestCreated(RequestEvent):
    """リクエストが作成された（在庫は変化しない）"""
    product_id: str
    quantity: int


class RequestApproved(RequestEvent):
    """リクエストが承認され、在庫が減算された"""
    product_id: str
    quantity: int
    remaining_stock: int


class RequestRejected(RequestEvent):
    """リクエストが却下された（在庫は変化しない）"""


class RequestCancelled(RequestEvent):
    """保留中のリクエストがクライアントによって取り消された"""


class RequestExpired(RequestEvent):
    """保留期間を過ぎたリクエストがリーパーによって削除された"""
    requested_at: datetime
