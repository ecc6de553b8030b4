import tempfile
import threading
import unittest
from datetime import timedelta
from unittest import mock

from app.core.config import settings
from app.core.exceptions import ConversionCapExceeded, InsufficientDynamicPoints, InvalidAmount
from app.db import models
from app.services import daily_state_service, draw_service, headline_service, points_service
from app.services.points_service import ActivityType, StaticSource
from tests.helpers import (
    SATURDAY,
    TUESDAY,
    WEDNESDAY,
    create_file_session_factory,
    create_session_factory,
    create_user,
)


class PointsLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine, factory = create_session_factory()
        self.db = factory()
        self.user = create_user(self.db, "alice")

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _earn(self, *event_types, now=WEDNESDAY):
        results = []
        for event_type in event_types:
            results.append(points_service.record_activity(self.db, self.user.id, event_type, now=now))
        return results

    def test_daily_cap_discards_excess(self) -> None:
        with mock.patch.object(settings, "DYNAMIC_DAILY_CAP", 100):
            results = self._earn(
                ActivityType.PROOF_VERIFIED,
                ActivityType.DAILY_VISIT,
                ActivityType.HEADLINE_VIEW,
                ActivityType.SOCIAL_ACTION,
            )

        self.assertEqual(sum(r.raw_points for r in results), 120)
        self.assertEqual(results[-1].dynamic_points_today, 100)
        self.assertEqual(sum(r.discarded_points for r in results), 20)

        day = points_service.get_points_day(self.db, self.user.id, "2026-10-14")
        self.assertEqual(day.dynamic_earned, 100)
        self.assertEqual(day.discarded_points, 20)
        self.assertEqual(points_service.get_account(self.db, self.user.id).dynamic_points, 100)

    def test_cap_resets_next_day_but_balance_carries(self) -> None:
        with mock.patch.object(settings, "DYNAMIC_DAILY_CAP", 100):
            self._earn(ActivityType.PROOF_VERIFIED, ActivityType.QUEST_COMPLETE)
            tomorrow = self._earn(ActivityType.DAILY_VISIT, now=WEDNESDAY + timedelta(days=1))[0]

        self.assertEqual(tomorrow.day_id, "2026-10-15")
        self.assertEqual(tomorrow.awarded_points, 10)
        self.assertEqual(tomorrow.dynamic_points_today, 10)
        self.assertEqual(tomorrow.dynamic_points_balance, 110)

    def test_repeated_activity_diminishes(self) -> None:
        results = self._earn(ActivityType.DAILY_VISIT, ActivityType.DAILY_VISIT, ActivityType.DAILY_VISIT)
        self.assertEqual([r.awarded_points for r in results], [10, 5, 2])

    def test_multiplier_headline_doubles_award(self) -> None:
        headline_service.ensure_headline(self.db, "2026-10-13", now=TUESDAY)
        result = self._earn(ActivityType.HEADLINE_ENGAGE, now=TUESDAY)[0]
        self.assertEqual(result.raw_points, 50)

    def test_tickets_follow_activity_threshold(self) -> None:
        first = self._earn(ActivityType.PROOF_VERIFIED)[0]
        self.assertEqual(first.tickets_granted, 4)

        second = self._earn(ActivityType.DAILY_VISIT)[0]
        self.assertEqual(second.tickets_granted, 0)
        self.assertEqual(draw_service.get_ticket_count(self.db, self.user.id, "2026-10-14"), 4)

    def test_unknown_activity_rejected(self) -> None:
        with self.assertRaises(ValueError):
            points_service.record_activity(self.db, self.user.id, "gems_purchase", now=WEDNESDAY)

    def test_static_points_are_never_converted(self) -> None:
        points_service.credit_static(self.db, self.user.id, 500, StaticSource.SIGNUP_BONUS)

        with self.assertRaises(InsufficientDynamicPoints):
            points_service.convert(self.db, self.user.id, 100, now=WEDNESDAY)

        account = points_service.get_account(self.db, self.user.id)
        self.assertEqual(account.static_points, 500)
        self.assertEqual(account.keys_balance, 0)

    def test_convert_moves_dynamic_points_to_keys(self) -> None:
        self._earn(ActivityType.PROOF_VERIFIED, ActivityType.QUEST_COMPLETE)
        result = points_service.convert(self.db, self.user.id, 100, now=WEDNESDAY)

        self.assertEqual(result.keys, 1)
        self.assertEqual(result.dynamic_points_balance, 50)
        self.assertEqual(result.keys_balance, 1)
        self.assertEqual(result.keys_remaining_today, settings.KEYS_DAILY_CAP - 1)

        account = points_service.get_account(self.db, self.user.id)
        self.assertEqual(account.lifetime_dynamic_converted, 100)
        self.assertEqual(account.lifetime_dynamic_earned, 150)

    def test_convert_rejects_bad_amounts(self) -> None:
        self._earn(ActivityType.PROOF_VERIFIED, ActivityType.QUEST_COMPLETE)
        for amount in (0, -100, 150):
            with self.assertRaises(InvalidAmount):
                points_service.convert(self.db, self.user.id, amount, now=WEDNESDAY)
        self.assertEqual(points_service.get_account(self.db, self.user.id).dynamic_points, 150)

    def test_daily_conversion_cap(self) -> None:
        self._earn(
            ActivityType.PROOF_VERIFIED,
            ActivityType.QUEST_COMPLETE,
            ActivityType.HEADLINE_ENGAGE,
            ActivityType.DROP_ENGAGEMENT,
            ActivityType.PROOF_VERIFIED,
        )
        with mock.patch.object(settings, "KEYS_DAILY_CAP", 1):
            with self.assertRaises(ConversionCapExceeded):
                points_service.convert(self.db, self.user.id, 200, now=WEDNESDAY)

            account = points_service.get_account(self.db, self.user.id)
            self.assertEqual(account.dynamic_points, 250)
            self.assertEqual(account.keys_balance, 0)

            points_service.convert(self.db, self.user.id, 100, now=WEDNESDAY)
            status = points_service.get_points_status(self.db, self.user.id, now=WEDNESDAY)
            self.assertEqual(status["conversion_cap_remaining"], 0)
            self.assertEqual(status["keys_balance"], 1)

    def test_weekly_conversion_cap(self) -> None:
        self._earn(
            ActivityType.PROOF_VERIFIED,
            ActivityType.QUEST_COMPLETE,
            ActivityType.HEADLINE_ENGAGE,
            ActivityType.DROP_ENGAGEMENT,
            ActivityType.PROOF_VERIFIED,
        )
        tomorrow = WEDNESDAY + timedelta(days=1)
        with mock.patch.object(settings, "KEYS_WEEKLY_CAP", 2):
            points_service.convert(self.db, self.user.id, 200, now=WEDNESDAY)
            self._earn(ActivityType.PROOF_VERIFIED, now=tomorrow)

            with self.assertRaises(ConversionCapExceeded):
                points_service.convert(self.db, self.user.id, 100, now=tomorrow)

            # 7日後には枠が戻る
            result = points_service.convert(self.db, self.user.id, 100, now=WEDNESDAY + timedelta(days=7))
            self.assertEqual(result.keys_balance, 3)

    def test_credit_static_rejects_negative_and_unknown_source(self) -> None:
        with self.assertRaises(InvalidAmount):
            points_service.credit_static(self.db, self.user.id, -1, StaticSource.MANUAL_ADJUSTMENT)
        with self.assertRaises(InvalidAmount):
            points_service.credit_static(self.db, self.user.id, 10, "gems")
        self.assertIsNone(points_service.get_account(self.db, self.user.id))

    def test_follower_points_are_tiered(self) -> None:
        self.assertEqual(points_service.follower_points(0), 0)
        self.assertEqual(points_service.follower_points(850), 8500)
        self.assertEqual(points_service.follower_points(12000), 2000 * 10 + 8000 * 4 + 2000 * 1)

    def test_follower_attestation_only_adds_increase(self) -> None:
        points_service.attest_followers(self.db, self.user.id, 850)
        points_service.attest_followers(self.db, self.user.id, 900)
        account = points_service.attest_followers(self.db, self.user.id, 800)

        self.assertEqual(account.static_points, 9000)
        self.assertEqual(account.dynamic_points, 0)

    def test_history_is_newest_first(self) -> None:
        self._earn(ActivityType.DAILY_VISIT)
        self._earn(ActivityType.QUEST_COMPLETE, now=WEDNESDAY + timedelta(minutes=5))

        history = points_service.get_points_history(self.db, self.user.id)
        self.assertEqual([e.event_type for e in history], ["quest_complete", "daily_visit"])


class ConcurrentActivityTests(unittest.TestCase):
    """同じユーザーへの同時更新（ファイルDB・複数スレッド）"""

    def setUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.engine, self.Session = create_file_session_factory(self.tmpdir.name)
        db = self.Session()
        self.user_id = create_user(db, "alice").id
        db.close()

    def tearDown(self) -> None:
        self.engine.dispose()
        self.tmpdir.cleanup()

    def _run_together(self, calls) -> list:
        """各呼び出しを別スレッド・別セッションで同時に走らせ、送出された例外を返す"""
        barrier = threading.Barrier(len(calls))
        errors = []

        def worker(call):
            db = self.Session()
            try:
                barrier.wait()
                call(db)
            except Exception as e:
                errors.append(repr(e))
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return errors

    def test_cap_accounting_under_concurrent_activity(self) -> None:
        event_types = [
            ActivityType.PROOF_VERIFIED,
            ActivityType.QUEST_COMPLETE,
            ActivityType.HEADLINE_ENGAGE,
            ActivityType.DROP_ENGAGEMENT,
        ] * 3
        calls = [
            lambda db, event_type=event_type: points_service.record_activity(
                db, self.user_id, event_type, now=WEDNESDAY
            )
            for event_type in event_types
        ]

        with mock.patch.object(settings, "DYNAMIC_DAILY_CAP", 250):
            errors = self._run_together(calls)

        self.assertEqual(errors, [])

        db = self.Session()
        try:
            events = db.query(models.ActivityEvent).filter(models.ActivityEvent.user_id == self.user_id).all()
            account = points_service.get_account(db, self.user_id)
            day = points_service.get_points_day(db, self.user_id, "2026-10-14")

            # 100+50+25, 50+25+12, 25+12+6, 25+12+6
            self.assertEqual(len(events), 12)
            self.assertEqual(sum(e.raw_points for e in events), 348)
            self.assertEqual(sum(e.awarded_points for e in events), 250)
            self.assertEqual(account.dynamic_points, 250)
            self.assertEqual(account.lifetime_dynamic_earned, 250)
            self.assertEqual(day.dynamic_earned, 250)
            self.assertEqual(day.discarded_points, 98)
            self.assertEqual(draw_service.get_ticket_count(db, self.user_id, "2026-10-14"), 348 // 25)
        finally:
            db.close()

    def test_first_tickets_from_engagement_and_activity(self) -> None:
        calls = []
        for _ in range(4):
            calls.append(lambda db: daily_state_service.record_engagement(db, self.user_id, now=SATURDAY))
            calls.append(lambda db: points_service.record_activity(
                db, self.user_id, ActivityType.HEADLINE_ENGAGE, now=SATURDAY
            ))

        errors = self._run_together(calls)
        self.assertEqual(errors, [])

        db = self.Session()
        try:
            tickets = db.query(models.DrawTicket).filter(models.DrawTicket.user_id == self.user_id).all()
            # 25+12+6+3=46 で1枚、chance のエンゲージボーナスで1枚
            self.assertEqual(len(tickets), 1)
            self.assertEqual(tickets[0].count, 2)
            self.assertTrue(daily_state_service.find_state(db, self.user_id, "2026-10-17").engaged)
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
