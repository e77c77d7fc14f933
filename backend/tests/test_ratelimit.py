import sys
import unittest
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from launchpad.services.ratelimit import FixedWindowRateLimiter


class TestFixedWindowRateLimiter(unittest.IsolatedAsyncioTestCase):
    async def test_limit_within_window(self):
        limiter = FixedWindowRateLimiter(2, 60)
        with patch("launchpad.services.ratelimit.monotonic", return_value=100.0):
            self.assertTrue(await limiter.allow("1.2.3.4"))
            self.assertTrue(await limiter.allow("1.2.3.4"))
            self.assertFalse(await limiter.allow("1.2.3.4"))
            self.assertTrue(await limiter.allow("5.6.7.8"))

    async def test_window_resets(self):
        limiter = FixedWindowRateLimiter(1, 60)
        with patch("launchpad.services.ratelimit.monotonic", return_value=100.0):
            self.assertTrue(await limiter.allow("ip"))
            self.assertFalse(await limiter.allow("ip"))
        with patch("launchpad.services.ratelimit.monotonic", return_value=160.0):
            self.assertTrue(await limiter.allow("ip"))

    async def test_zero_disables(self):
        limiter = FixedWindowRateLimiter(0, 60)
        for _ in range(5):
            self.assertTrue(await limiter.allow("ip"))


if __name__ == "__main__":
    unittest.main()
