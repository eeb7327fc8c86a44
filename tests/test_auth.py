import threading
import unittest
from urllib.parse import parse_qs

import httpx

from vidcrawl.auth import (
    LoginCookieCache,
    LoginDetails,
    LoginError,
    login,
    parse_login_token,
    star_password,
)
from vidcrawl.cookies import make_cookie

LOGIN_PAGE = """
<html><body>
  <form method="post" action="/login">
    <input type="hidden" name="_token" value="csrf-123">
    <input name="email"><input name="password" type="password">
  </form>
</body></html>
"""


class LoginFlowTestCase(unittest.TestCase):
    def test_parse_login_token(self) -> None:
        self.assertEqual(parse_login_token(LOGIN_PAGE), "csrf-123")
        self.assertIsNone(parse_login_token("<form><input name='email'></form>"))

    def test_star_password(self) -> None:
        self.assertEqual(star_password("hunter2"), "*******")
        self.assertEqual(star_password(None), "")

    def test_login_posts_form_and_returns_cookies(self) -> None:
        posted = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200,
                    text=LOGIN_PAGE,
                    headers={"content-type": "text/html", "set-cookie": "XSRF-TOKEN=abc; Path=/"},
                )
            posted.update({key: values[0] for key, values in parse_qs(request.content.decode()).items()})
            return httpx.Response(200, text="welcome", headers={"set-cookie": "session=s3cr3t; Path=/"})

        client = httpx.Client(transport=httpx.MockTransport(handler))
        try:
            cookies = login(
                LoginDetails(username="me@example.com", password="pw", login_url="https://site.com/login"),
                client=client,
            )
        finally:
            client.close()

        self.assertEqual(
            posted,
            {"email": "me@example.com", "username": "me@example.com", "password": "pw", "_token": "csrf-123"},
        )
        self.assertEqual({cookie.name: cookie.value for cookie in cookies}, {"XSRF-TOKEN": "abc", "session": "s3cr3t"})

    def test_login_rejection_raises(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, text="<form></form>", headers={"content-type": "text/html"})
            return httpx.Response(401, text="bad credentials")

        client = httpx.Client(transport=httpx.MockTransport(handler))
        try:
            with self.assertRaises(LoginError):
                login(LoginDetails("me", "wrong", "https://site.com/login"), client=client)
        finally:
            client.close()


class LoginCookieCacheTestCase(unittest.TestCase):
    def test_falls_back_to_base_domain(self) -> None:
        cache = LoginCookieCache()
        cache.store("site.com", [make_cookie("session", "abc", "site.com")])

        cookies = cache.get("https://www.site.com/videos")

        self.assertEqual([cookie.name for cookie in cookies], ["session"])
        self.assertIsNone(cache.get("https://other.com"))

    def test_logs_in_once_per_host_across_threads(self) -> None:
        cache = LoginCookieCache()
        calls = []
        barrier = threading.Barrier(4)

        def loader():
            calls.append(1)
            return [make_cookie("session", "abc", "site.com")]

        def worker():
            barrier.wait()
            cache.get_or_login("https://site.com/channel", loader)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(calls), 1)

    def test_failed_login_is_remembered_as_no_cookies(self) -> None:
        cache = LoginCookieCache()
        calls = []

        def loader():
            calls.append(1)
            raise LoginError("nope")

        self.assertEqual(cache.get_or_login("https://site.com/a", loader), [])
        self.assertEqual(cache.get_or_login("https://site.com/b", loader), [])
        self.assertEqual(len(calls), 1)


if __name__ == "__main__":
    unittest.main()
