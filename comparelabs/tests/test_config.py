"""Tests for environment configuration parsing and defaults."""

import unittest

from comparelabs import config


class ConfigTests(unittest.TestCase):
    def test_resolve_app_env_strips_wrapping_quotes(self):
        self.assertEqual(config.resolve_app_env('"Development"', None), "development")

    def test_resolve_app_env_falls_back_to_environment_then_production(self):
        self.assertEqual(config.resolve_app_env(None, "dev"), "dev")
        self.assertEqual(config.resolve_app_env(None, None), "production")

    def test_parse_cors_origins_trims_deduplicates_and_strips_trailing_slash(self):
        parsed = config._parse_cors_origins(
            " https://app.example.com/ ,https://app.example.com, http://localhost:5173/ "
        )
        self.assertEqual(
            parsed,
            ["https://app.example.com", "http://localhost:5173"],
        )

    def test_parse_cors_origins_rejects_wildcard(self):
        with self.assertRaises(ValueError):
            config._parse_cors_origins("*,https://app.example.com")
        with self.assertRaises(ValueError):
            config._parse_cors_origins('"*"')

    def test_resolve_cors_allow_origins_uses_development_defaults(self):
        for env_name in ("development", "dev", "local"):
            with self.subTest(env_name=env_name):
                self.assertEqual(
                    config.resolve_cors_allow_origins("", env_name),
                    ["http://localhost:3000", "http://localhost:5173"],
                )

    def test_resolve_cors_allow_origins_requires_explicit_production_origins(self):
        self.assertEqual(config.resolve_cors_allow_origins("", "production"), [])
        self.assertEqual(
            config.resolve_cors_allow_origins("https://a.example.com/", "production"),
            ["https://a.example.com"],
        )

    def test_parse_exempt_emails_lowercases_and_drops_invalid(self):
        parsed = config.parse_exempt_emails(' "Owner@Example.com, not-an-email, qa@example.com" ')
        self.assertEqual(parsed, frozenset({"owner@example.com", "qa@example.com"}))
        self.assertEqual(config.parse_exempt_emails(None), frozenset())

    def test_parse_bool(self):
        self.assertTrue(config._parse_bool("YES", False))
        self.assertFalse(config._parse_bool("'0'", True))
        self.assertTrue(config._parse_bool("maybe", True))
        self.assertFalse(config._parse_bool(None, False))

    def test_parse_positive_float_falls_back_for_invalid_values(self):
        self.assertEqual(config._parse_positive_float("12.5", 60.0), 12.5)
        self.assertEqual(config._parse_positive_float("", 60.0), 60.0)
        self.assertEqual(config._parse_positive_float("soon", 60.0), 60.0)
        self.assertEqual(config._parse_positive_float("-3", 60.0), 60.0)


if __name__ == "__main__":
    unittest.main()
