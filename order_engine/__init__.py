"""在庫引き当て付きの注文確定・注文ライフサイクルエンジン"""
