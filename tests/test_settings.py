import os
import unittest
from unittest.mock import patch

from pydantic import ValidationError

from icu_handoff.config.settings import Settings


class TestSettings(unittest.TestCase):
    def test_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.SESSION_INACTIVITY_TIMEOUT_SEC, 1800)
        self.assertEqual(settings.SESSION_URGENT_THRESHOLD_SEC, 300)
        self.assertEqual(settings.BYPASS_ROLES, ["admin", "coordenador", "diarista"])
        self.assertEqual(settings.FORCE_RELEASE_ROLES, ["admin", "coordenador"])
        self.assertEqual(settings.HANDOVER_ROLES, ["plantonista"])
        self.assertTrue(settings.RECONCILE_ENABLED)
        self.assertIsNone(settings.SESSION_STORE_PATH)
        self.assertEqual([u.id for u in settings.ICU_UNITS], ["uti-1", "uti-2", "uti-3"])

    def test_env_overrides(self):
        env = {
            "SESSION_INACTIVITY_TIMEOUT_SEC": "600",
            "RECONCILE_ENABLED": "false",
            "BYPASS_ROLES": "Admin, NIR",
            "ICU_UNITS": "cti-a:CTI Adulto:12,cti-p:CTI Pediatrico",
            "SESSION_STORE_PATH": "/tmp/sessions.json",
        }
        with patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()

        self.assertEqual(settings.SESSION_INACTIVITY_TIMEOUT_SEC, 600)
        self.assertFalse(settings.RECONCILE_ENABLED)
        self.assertEqual(settings.BYPASS_ROLES, ["admin", "nir"])
        self.assertEqual(settings.ICU_UNITS[0].name, "CTI Adulto")
        self.assertEqual(settings.ICU_UNITS[0].bed_count, 12)
        self.assertEqual(settings.ICU_UNITS[1].bed_count, 0)
        self.assertEqual(settings.SESSION_STORE_PATH, "/tmp/sessions.json")

    def test_empty_role_list_is_allowed(self):
        with patch.dict(os.environ, {"FORCE_RELEASE_ROLES": ""}, clear=True):
            settings = Settings.from_env()
        self.assertEqual(settings.FORCE_RELEASE_ROLES, [])

    def test_non_positive_timeout_is_rejected(self):
        with patch.dict(os.environ, {"SESSION_INACTIVITY_TIMEOUT_SEC": "0"}, clear=True):
            with self.assertRaises(ValidationError):
                Settings.from_env()

    def test_non_positive_interval_and_urgent_threshold_are_rejected(self):
        for name in ("RECONCILE_INTERVAL_SEC", "SESSION_URGENT_THRESHOLD_SEC"):
            with patch.dict(os.environ, {name: "0"}, clear=True):
                with self.assertRaises(ValidationError, msg=name):
                    Settings.from_env()


if __name__ == "__main__":
    unittest.main()
