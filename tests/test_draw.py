import hashlib
import unittest
from collections import Counter
from datetime import timedelta
from unittest import mock

from app.core.exceptions import DrawClosed, DrawInProgress, DrawNotClosable, InvalidAmount
from app.db import models
from app.services import draw_service, leaderboard_service
from tests.helpers import WEDNESDAY, create_session_factory, create_user

DAY = "2026-10-14"
NEXT_DAY = WEDNESDAY + timedelta(days=1)

SINGLE_PRIZE = [{"tier": "grand", "type": "keys", "amount": 10, "quantity": 1}]


class SelectWinnersTests(unittest.TestCase):
    def test_weights_follow_ticket_counts(self) -> None:
        entries = [(1, 3), (2, 1), (3, 0)]
        wins = Counter()
        rounds = 4000
        for i in range(rounds):
            seed = hashlib.sha256(str(i).encode()).hexdigest()
            winners = draw_service.select_winners(entries, SINGLE_PRIZE, seed)
            wins[winners[0]["user_id"]] += 1

        self.assertEqual(wins[3], 0)
        ratio = wins[1] / rounds
        self.assertGreater(ratio, 0.70)
        self.assertLess(ratio, 0.80)

    def test_same_seed_same_result(self) -> None:
        entries = [(5, 2), (1, 7), (9, 1)]
        seed = draw_service.draw_seed(DAY)
        first = draw_service.select_winners(entries, draw_service.PRIZE_POOL, seed)
        second = draw_service.select_winners(list(reversed(entries)), draw_service.PRIZE_POOL, seed)
        self.assertEqual(first, second)

    def test_one_prize_per_user(self) -> None:
        entries = [(1, 10), (2, 1)]
        winners = draw_service.select_winners(entries, draw_service.PRIZE_POOL, "ab" * 32)
        self.assertEqual(sorted(w["user_id"] for w in winners), [1, 2])
        self.assertEqual(winners[0]["prize_tier"], "grand")

    def test_no_entries_no_winners(self) -> None:
        self.assertEqual(draw_service.select_winners([], draw_service.PRIZE_POOL, "00"), [])

    def test_prize_pool_rejects_currency(self) -> None:
        with self.assertRaises(InvalidAmount):
            draw_service.validate_prize_pool([{"tier": "grand", "type": "gems", "amount": 100, "quantity": 1}])


class DrawExecutionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, factory = create_session_factory()
        self.db = factory()
        self.alice = create_user(self.db, "alice")
        self.bob = create_user(self.db, "bob")
        self.carol = create_user(self.db, "carol")

        draw_service.ensure_draw(self.db, DAY, now=WEDNESDAY)
        draw_service.accrue_ticket(self.db, self.alice.id, DAY, count=3, now=WEDNESDAY)
        draw_service.accrue_ticket(self.db, self.bob.id, DAY, count=1, now=WEDNESDAY)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_cannot_execute_open_day(self) -> None:
        with self.assertRaises(DrawNotClosable):
            draw_service.execute_draw(self.db, DAY, now=WEDNESDAY)
        self.assertEqual(draw_service.get_draw(self.db, DAY).status, draw_service.DRAW_PENDING)

    def test_execute_is_idempotent(self) -> None:
        first = draw_service.execute_draw(self.db, DAY, now=NEXT_DAY)
        second = draw_service.execute_draw(self.db, DAY, now=NEXT_DAY + timedelta(hours=1))

        self.assertEqual(first, second)
        draw = draw_service.get_draw(self.db, DAY)
        self.assertEqual(draw.status, draw_service.DRAW_EXECUTED)
        self.assertEqual(draw.seed, draw_service.draw_seed(DAY))
        self.assertEqual(draw.total_entries, 2)
        self.assertEqual(draw.total_tickets, 4)

    def test_zero_ticket_user_never_wins(self) -> None:
        winners = draw_service.execute_draw(self.db, DAY, now=NEXT_DAY)
        winner_ids = {w["user_id"] for w in winners}
        self.assertEqual(winner_ids, {self.alice.id, self.bob.id})
        self.assertIsNone(draw_service.winners_for_user(draw_service.get_draw(self.db, DAY), self.carol.id))

    def test_tickets_rejected_after_execution(self) -> None:
        draw_service.execute_draw(self.db, DAY, now=NEXT_DAY)
        with self.assertRaises(DrawClosed):
            draw_service.accrue_ticket(self.db, self.carol.id, DAY, now=NEXT_DAY)

    def test_snapshot_freezes_weights(self) -> None:
        leaderboard_service.snapshot(self.db, DAY, now=NEXT_DAY)
        with self.assertRaises(DrawClosed):
            draw_service.accrue_ticket(self.db, self.carol.id, DAY, now=NEXT_DAY)

        draw_service.execute_draw(self.db, DAY, now=NEXT_DAY)
        self.assertEqual(draw_service.get_draw(self.db, DAY).total_tickets, 4)

    def test_stale_closing_draw_is_resumed(self) -> None:
        draw = draw_service.get_draw(self.db, DAY)
        draw.status = draw_service.DRAW_CLOSING
        draw.closing_started_at = NEXT_DAY
        self.db.commit()

        later = NEXT_DAY + timedelta(hours=1)
        winners = draw_service.execute_draw(self.db, DAY, now=later)

        self.assertEqual(len(winners), 2)
        self.assertEqual(draw_service.get_draw(self.db, DAY).status, draw_service.DRAW_EXECUTED)

    def test_fresh_closing_draw_is_left_alone(self) -> None:
        draw = draw_service.get_draw(self.db, DAY)
        draw.status = draw_service.DRAW_CLOSING
        draw.closing_started_at = NEXT_DAY
        self.db.commit()

        with self.assertRaises(DrawInProgress):
            draw_service.execute_draw(self.db, DAY, now=NEXT_DAY + timedelta(seconds=30))

    def test_draw_is_unique_per_day(self) -> None:
        draw_service.ensure_draw(self.db, DAY, now=WEDNESDAY)
        self.assertEqual(self.db.query(models.DailyDraw).filter(models.DailyDraw.day_id == DAY).count(), 1)

    def test_concurrent_first_ticket_row_is_merged(self) -> None:
        real_find = draw_service._find_ticket
        calls = []

        def racing_find(db, user_id, day_id):
            # 1回目は「まだ無い」と見えたことにして INSERT を衝突させる
            calls.append(day_id)
            if len(calls) == 1:
                return None
            return real_find(db, user_id, day_id)

        with mock.patch.object(draw_service, "_find_ticket", side_effect=racing_find):
            ticket = draw_service.accrue_ticket(self.db, self.alice.id, DAY, count=2, now=WEDNESDAY)

        self.assertEqual(len(calls), 2)
        self.assertEqual(ticket.count, 5)
        rows = self.db.query(models.DrawTicket).filter(models.DrawTicket.user_id == self.alice.id).all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].count, 5)


if __name__ == "__main__":
    unittest.main()
