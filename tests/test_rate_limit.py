import unittest
from unittest import mock

from support import TempDatabaseTestCase

from achei import storage
from achei.rate_limit import RateLimiter, RateLimitExceeded


class RateLimiterTests(TempDatabaseTestCase):
    def test_quota_per_window(self) -> None:
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        limiter.check("u1", "search-cnpja")
        limiter.check("u1", "search-cnpja")
        with self.assertRaises(RateLimitExceeded) as ctx:
            limiter.check("u1", "search-cnpja")
        self.assertEqual(ctx.exception.retry_after, 60)
        self.assertTrue(limiter.take("u1", "search-by-cep"))
        self.assertTrue(limiter.take("u2", "search-cnpja"))

    def test_expired_events_are_removed(self) -> None:
        limiter = RateLimiter(max_requests=10, window_seconds=1)
        with mock.patch("achei.rate_limit.time.time", return_value=1000.0):
            for _ in range(3):
                self.assertTrue(limiter.take("u1", "search-cnpja"))
        limiter.take("u2", "search-cnpja")
        with mock.patch("achei.rate_limit.time.time", return_value=1002.0):
            for _ in range(3):
                self.assertTrue(limiter.take("u1", "search-cnpja"))

        self.assertEqual(storage.count_rate_events("u1", "search-cnpja", 0), 3)
        self.assertEqual(storage.count_rate_events("u2", "search-cnpja", 0), 1)

    def test_window_slides(self) -> None:
        limiter = RateLimiter(max_requests=1, window_seconds=1)
        with mock.patch("achei.rate_limit.time.time", return_value=1000.0):
            self.assertTrue(limiter.take("u1", "e"))
            self.assertFalse(limiter.take("u1", "e"))
        with mock.patch("achei.rate_limit.time.time", return_value=1001.5):
            self.assertTrue(limiter.take("u1", "e"))


if __name__ == "__main__":
    unittest.main()
