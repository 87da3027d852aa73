"""
Marketplace — イベント定義

起きた事実を他サービスへ通知するためのイベント。
名前は過去形で、作成後は変更しない。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderPlaced(BaseModel):
    """注文を保存し、決済インテントを作成した"""
    order_id: str
    consumer_id: str
    total_amount: float
    gateway_order_id: str
    timestamp: datetime


class OrderCompensated(BaseModel):
    """注文作成に失敗し、引き当てを戻して注文を削除した"""
    order_id: str
    consumer_id: str
    reason: str
    released: list[dict]
    timestamp: datetime


class OrderConfirmed(BaseModel):
    """
    決済署名を検証し、注文を CONFIRMED にした。

    購入者と各商品の出品者を含めるので、通知サービスは
    問い合わせなしで両者にメールを送れる。
    """
    order_id: str
    consumer_id: str
    total_amount: float
    gateway_payment_id: str
    owners: list[dict]
    timestamp: datetime
