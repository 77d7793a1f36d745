"""
Order Engine — 在庫引き当てコーディネーター (Reservation Coordinator)

注文明細ごとの (product_id, quantity) を「全部引き当てる or 何も引き当てない」
の一括操作にする。Saga のオーケストレーターと同じ考え方:

  ┌──────────────────────────────────────────────────────┐
  │  1. 明細の順に try_reserve を実行                      │
  │     ├─ 成功 → 次の明細へ                               │
  │     └─ 失敗 → 引き当て済みを逆順に release (補償)      │
  │              → 失敗した商品と理由を呼び出し側へ返す     │
  └──────────────────────────────────────────────────────┘

事前に全明細の在庫をチェックしてから減算する方式は、同時注文が
両方ともチェックを通過して売り越す。商品単位のアトミックな条件付き
減算＋補償で、全商品を跨ぐグローバルロックなしに売り越しを防ぐ。
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from uuid import UUID

from .errors import CompensationFailure, PersistenceFailure, ProductNotFound, ValidationError
from .ledger import ProductLedger
from .models import Reservation

logger = logging.getLogger(__name__)


class ReservationCoordinator:
    def __init__(self, ledger: ProductLedger):
        self.ledger = ledger

    async def reserve_all(self, demands: Iterable[tuple[UUID, int]]) -> list[Reservation]:
        """
        全明細の在庫を引き当てる。

        途中で失敗した場合は、戻る前に引き当て済みの分をすべて解放し、
        元の失敗（InsufficientStock / ProductNotFound / PersistenceFailure）を送出する。
        呼び出し側が中間状態を観測することはない。
        """
        demands = list(demands)
        if not demands:
            raise ValidationError("No items provided")

        reserved: list[Reservation] = []
        in_flight: asyncio.Future | None = None
        try:
            for product_id, quantity in demands:
                # コミット後にキャンセルされても結果を取りこぼさないよう、
                # 1 件ずつ shield したタスクとして実行する
                in_flight = asyncio.ensure_future(self.ledger.try_reserve(product_id, quantity))
                reserved.append(await asyncio.shield(in_flight))
                in_flight = None
        except asyncio.CancelledError:
            # キャンセルされても補償は最後まで実行する
            await asyncio.shield(self._rollback_cancelled(reserved, in_flight))
            raise
        except Exception as e:
            logger.info("Reservation failed (%s); rolling back %d item(s)", e, len(reserved))
            await self._rollback(reserved)
            raise

        return reserved

    async def release_all(self, reservations: Sequence[Reservation]) -> None:
        """
        引き当て済みの在庫を逆順に解放する（補償トランザクション）。

        解放できなかった分が 1 件でもあれば CompensationFailure を送出する。
        商品がすでに削除されている場合は戻す先がないため警告のみ。
        """
        unreleased: list[Reservation] = []
        for reservation in reversed(reservations):
            try:
                await self.ledger.release(reservation.product_id, reservation.quantity)
            except ProductNotFound:
                logger.warning(
                    "Product %s vanished before release of %d unit(s); nothing to restore",
                    reservation.product_id,
                    reservation.quantity,
                )
            except PersistenceFailure:
                logger.exception(
                    "Compensation failed: %d unit(s) of %s remain debited",
                    reservation.quantity,
                    reservation.product_id,
                )
                unreleased.append(reservation)

        if unreleased:
            raise CompensationFailure(
                f"Could not release {len(unreleased)} reservation(s)", unreleased
            )

    async def _rollback(self, reserved: list[Reservation]) -> None:
        if reserved:
            await self.release_all(reserved)

    async def _rollback_cancelled(
        self, reserved: list[Reservation], in_flight: asyncio.Future | None
    ) -> None:
        """キャンセル時の補償。実行中だった引き当ての完了を待ってから解放する。"""
        if in_flight is not None:
            try:
                reserved.append(await in_flight)
            except Exception as e:
                # 失敗した引き当ては在庫を減らしていないので解放不要
                logger.info("In-flight reservation failed during cancellation: %s", e)
        await self._rollback(reserved)
