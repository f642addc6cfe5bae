import unittest
from datetime import date, datetime

from stagetrack import create_app
from stagetrack.extensions import db
from stagetrack.models import AuditLog, Order, StageThreshold, SystemSetting, User, ROLE_ADMIN, ROLE_AGENT
from stagetrack.services import order_service, threshold_service
from stagetrack.services.session_service import Actor
from stagetrack.validation import AuthorizationError, ValidationError


class ThresholdServiceTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.app = create_app({
            "SECRET_KEY": "test",
            "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
            "SQLALCHEMY_TRACK_MODIFICATIONS": False,
            "TESTING": True,
        })
        cls.ctx = cls.app.app_context()
        cls.ctx.push()
        db.create_all()

    @classmethod
    def tearDownClass(cls):
        db.session.remove()
        db.drop_all()
        cls.ctx.pop()

    def setUp(self):
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        admin_user = User(name="Admin", email="admin@test.local", role=ROLE_ADMIN, is_active=True)
        agent_user = User(name="Agent", email="agent@test.local", role=ROLE_AGENT, is_active=True)
        db.session.add(admin_user)
        db.session.add(agent_user)
        db.session.commit()

        self.admin = Actor.from_user(admin_user)
        self.agent = Actor.from_user(agent_user)

    # ------------------------------------------------------------------
    # Defaults & lookups
    # ------------------------------------------------------------------

    def test_defaults_without_rows(self):
        t = threshold_service.get_threshold("MANUFACTURING")
        self.assertEqual((t.warning_days, t.critical_days), (50, 90))
        self.assertTrue(t.is_default)
        t = threshold_service.get_threshold("qc")
        self.assertEqual((t.stage, t.warning_days, t.critical_days), ("QC", 7, 14))

    def test_unknown_stage_uses_fallback(self):
        t = threshold_service.get_threshold("WAREHOUSE")
        self.assertEqual((t.warning_days, t.critical_days), (30, 60))

    def test_list_thresholds_covers_every_stage_in_order(self):
        stages = [t.stage for t in threshold_service.list_thresholds()]
        self.assertEqual(stages[0], "MANUFACTURING")
        self.assertEqual(stages[-1], "FOLLOW_UP")
        self.assertEqual(len(stages), 10)

    def test_initialize_is_idempotent(self):
        created = threshold_service.initialize_thresholds(self.admin)
        self.assertEqual(len(created), 10)
        self.assertEqual(db.session.query(StageThreshold).count(), 10)
        self.assertEqual(db.session.query(SystemSetting).count(), 3)

        self.assertEqual(threshold_service.initialize_thresholds(self.admin), [])
        self.assertEqual(db.session.query(StageThreshold).count(), 10)

    # ------------------------------------------------------------------
    # Threshold edits
    # ------------------------------------------------------------------

    def test_update_threshold_persists_and_audits(self):
        t = threshold_service.update_threshold("TESTING", self.admin, warning_days=12, critical_days=20)
        self.assertEqual((t.warning_days, t.critical_days), (12, 20))
        self.assertFalse(t.is_default)
        self.assertEqual(t.updated_by, "Admin")

        entry = db.session.query(AuditLog).filter_by(action="THRESHOLD_UPDATED", entity_id="TESTING").one()
        self.assertEqual(entry.entity_type, "StageThreshold")
        self.assertIn('"warning_days"', entry.changes)

    def test_partial_update_is_merged_before_validation(self):
        # Default critical for TESTING is 15
        with self.assertRaises(ValidationError):
            threshold_service.update_threshold("TESTING", self.admin, warning_days=15)
        t = threshold_service.update_threshold("TESTING", self.admin, warning_days=14)
        self.assertEqual((t.warning_days, t.critical_days), (14, 15))

    def test_update_threshold_range_checks(self):
        with self.assertRaises(ValidationError):
            threshold_service.update_threshold("QC", self.admin, critical_days=366)
        with self.assertRaises(ValidationError):
            threshold_service.update_threshold("QC", self.admin, warning_days=-1)
        with self.assertRaises(ValidationError):
            threshold_service.update_threshold("QC", self.admin, warning_days=2.5)
        with self.assertRaises(ValidationError):
            threshold_service.update_threshold("DOCKSIDE", self.admin, warning_days=1)

    def test_update_threshold_requires_admin(self):
        with self.assertRaises(AuthorizationError):
            threshold_service.update_threshold("QC", self.agent, warning_days=5)
        self.assertEqual(db.session.query(StageThreshold).count(), 0)

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    def test_system_settings_defaults(self):
        settings = threshold_service.get_system_settings()
        self.assertEqual(settings["HOLIDAY_SEASON_START"]["value"], "10-01")
        self.assertEqual(settings["HOLIDAY_SEASON_END"]["value"], "12-31")
        self.assertEqual(settings["HOLIDAY_BUFFER_DAYS"]["value"], "25")

    def test_update_system_setting_validates(self):
        with self.assertRaises(ValidationError):
            threshold_service.update_system_setting("HOLIDAY_SEASON_START", "13-01", self.admin)
        with self.assertRaises(ValidationError):
            threshold_service.update_system_setting("HOLIDAY_SEASON_END", "2024-12-31", self.admin)
        with self.assertRaises(ValidationError):
            threshold_service.update_system_setting("HOLIDAY_BUFFER_DAYS", "101", self.admin)
        with self.assertRaises(ValidationError):
            threshold_service.update_system_setting("HOLIDAY_BUFFER_DAYS", "", self.admin)
        with self.assertRaises(AuthorizationError):
            threshold_service.update_system_setting("HOLIDAY_BUFFER_DAYS", "10", self.agent)

    def test_update_system_setting_audited(self):
        setting = threshold_service.update_system_setting("HOLIDAY_BUFFER_DAYS", "30", self.admin)
        self.assertEqual(setting["value"], "30")
        self.assertEqual(threshold_service.get_season_settings().buffer_days, 30)
        entry = db.session.query(AuditLog).filter_by(action="SYSTEM_SETTING_UPDATED").one()
        self.assertEqual(entry.entity_id, "HOLIDAY_BUFFER_DAYS")

    # ------------------------------------------------------------------
    # Season window
    # ------------------------------------------------------------------

    def test_wraparound_season(self):
        self.assertTrue(threshold_service.is_in_season(date(2024, 1, 15), "11-01", "02-28"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 6, 15), "11-01", "02-28"))
        self.assertTrue(threshold_service.is_in_season(date(2024, 11, 1), "11-01", "02-28"))
        self.assertTrue(threshold_service.is_in_season(date(2025, 2, 28), "11-01", "02-28"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 10, 31), "11-01", "02-28"))
        self.assertFalse(threshold_service.is_in_season(date(2025, 3, 1), "11-01", "02-28"))

    def test_same_year_season(self):
        self.assertTrue(threshold_service.is_in_season(date(2024, 10, 1), "10-01", "12-31"))
        self.assertTrue(threshold_service.is_in_season(date(2024, 12, 31), "10-01", "12-31"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 9, 30), "10-01", "12-31"))

    def test_same_month_season(self):
        self.assertTrue(threshold_service.is_in_season(date(2024, 10, 15), "10-10", "10-20"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 10, 21), "10-10", "10-20"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 11, 15), "10-10", "10-20"))

    def test_same_month_wraparound(self):
        self.assertTrue(threshold_service.is_in_season(date(2024, 11, 25), "11-20", "11-05"))
        self.assertTrue(threshold_service.is_in_season(date(2024, 11, 3), "11-20", "11-05"))
        self.assertTrue(threshold_service.is_in_season(date(2024, 6, 1), "11-20", "11-05"))
        self.assertFalse(threshold_service.is_in_season(date(2024, 11, 10), "11-20", "11-05"))

    def test_buffer_only_applies_to_manufacturing(self):
        in_season = datetime(2024, 11, 15, 12, 0)
        manufacturing = threshold_service.effective_threshold("MANUFACTURING", in_season)
        self.assertTrue(manufacturing.in_season)
        self.assertEqual((manufacturing.warning_days, manufacturing.critical_days), (75, 115))
        self.assertEqual(manufacturing.buffer_applied, 25)

        testing = threshold_service.effective_threshold("TESTING", in_season)
        self.assertTrue(testing.in_season)
        self.assertEqual((testing.warning_days, testing.critical_days), (10, 15))
        self.assertEqual(testing.buffer_applied, 0)

        off_season = threshold_service.effective_threshold("MANUFACTURING", date(2024, 3, 1))
        self.assertEqual((off_season.warning_days, off_season.critical_days), (50, 90))

    # ------------------------------------------------------------------
    # ETA
    # ------------------------------------------------------------------

    def test_expected_cycle_days_from_defaults(self):
        # 70 + 12.5 + 52.5 + 17.5 + 10.5 + 5 + 12.5 = 180.5
        self.assertEqual(threshold_service.expected_cycle_days(), 181)
        self.assertEqual(
            threshold_service.estimate_eta(datetime(2024, 1, 1)),
            datetime(2024, 6, 30),
        )

    def test_recalculate_etas_uses_current_thresholds(self):
        account = order_service.create_account({"name": "Acme"}, self.admin)
        order = order_service.create_order({"account_id": account.id}, self.admin)
        order_id = order.id
        original_eta = order.eta_date

        threshold_service.update_threshold("MANUFACTURING", self.admin, warning_days=60, critical_days=100)
        self.assertEqual(threshold_service.recalculate_etas(self.admin), 1)

        refreshed = db.session.get(Order, order_id)
        self.assertEqual((refreshed.eta_date - original_eta).days, 10)
        self.assertEqual(db.session.query(AuditLog).filter_by(action="ETAS_RECALCULATED").count(), 1)

    def test_recalculate_etas_requires_admin(self):
        with self.assertRaises(AuthorizationError):
            threshold_service.recalculate_etas(self.agent)
