import os
import re
import sys
import tempfile
import unittest
from pathlib import Path

os.environ.setdefault(
    "DB_URL", f"sqlite:///{Path(tempfile.gettempdir()) / 'chat_video_queue_test.sqlite'}"
)

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import backend_app


class CorsConfigTests(unittest.TestCase):
    def test_wildcard_origins_expand_to_regex(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "https://*.overlay.example"}
        )

        self.assertEqual(allow_origins, [])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://obs.overlay.example"))
        self.assertIsNone(pattern.fullmatch("https://overlay.example"))
        self.assertIsNone(pattern.fullmatch("https://example.com"))

    def test_mixed_separators_and_trailing_slash(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "http://localhost:3000/, https://*.overlay.example/"}
        )

        self.assertEqual(allow_origins, ["http://localhost:3000"])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://obs.overlay.example"))

    def test_explicit_origins_disable_default_regex(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env(
            {"CORS_ALLOW_ORIGINS": "http://localhost:3000"}
        )
        self.assertEqual(allow_origins, ["http://localhost:3000"])
        self.assertIsNone(allow_regex)

    def test_default_regex_retained_when_no_overrides(self) -> None:
        allow_origins, allow_regex = backend_app._cors_settings_from_env({})

        self.assertEqual(allow_origins, [])
        pattern = re.compile(allow_regex or "")
        self.assertIsNotNone(pattern.fullmatch("https://anywhere.example"))


if __name__ == "__main__":
    unittest.main()
