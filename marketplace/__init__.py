"""マーケットプレイス注文サービス — 注文作成と決済確認"""
