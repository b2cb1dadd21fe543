import os
import sys
import unittest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from quicknotes import firewall  # noqa: E402


class IpPatternTests(unittest.TestCase):
    def test_exact_match(self):
        self.assertTrue(firewall.ip_matches_pattern("192.0.2.10", "192.0.2.10"))
        self.assertFalse(firewall.ip_matches_pattern("192.0.2.10", "192.0.2.1"))

    def test_cidr_v4(self):
        self.assertTrue(firewall.ip_matches_pattern("10.20.30.40", "10.20.0.0/16"))
        self.assertFalse(firewall.ip_matches_pattern("10.21.30.40", "10.20.0.0/16"))
        self.assertTrue(firewall.ip_matches_pattern("10.20.30.40", "10.20.30.1/16"))

    def test_cidr_v6(self):
        self.assertTrue(firewall.ip_matches_pattern("2001:db8::1", "2001:db8::/32"))
        self.assertFalse(firewall.ip_matches_pattern("2001:db9::1", "2001:db8::/32"))

    def test_cidr_version_mismatch(self):
        self.assertFalse(firewall.ip_matches_pattern("10.0.0.1", "2001:db8::/32"))
        self.assertFalse(firewall.ip_matches_pattern("2001:db8::1", "10.0.0.0/8"))

    def test_invalid_cidr(self):
        self.assertFalse(firewall.ip_matches_pattern("10.0.0.1", "10.0.0.0/99"))

    def test_wildcard(self):
        self.assertTrue(firewall.ip_matches_pattern("192.168.7.42", "192.168.*.*"))
        self.assertTrue(firewall.ip_matches_pattern("192.168.7.42", "192.168.7.*"))
        self.assertFalse(firewall.ip_matches_pattern("192.169.7.42", "192.168.*.*"))
        self.assertFalse(firewall.ip_matches_pattern("192.168.7.42", "192.168.*"))

    def test_blank_pattern(self):
        self.assertFalse(firewall.ip_matches_pattern("192.0.2.1", "  "))


class FirewallModeTests(unittest.TestCase):
    def test_disabled_allows_everything(self):
        self.assertTrue(firewall.check_ip_firewall("unknown", "disabled", whitelist=[]))
        self.assertTrue(firewall.check_ip_firewall("192.0.2.1", "disabled", blacklist=["192.0.2.1"]))

    def test_blacklist(self):
        blacklist = ["198.51.100.*", "203.0.113.0/24"]
        self.assertFalse(firewall.check_ip_firewall("198.51.100.9", "blacklist", blacklist=blacklist))
        self.assertFalse(firewall.check_ip_firewall("203.0.113.200", "blacklist", blacklist=blacklist))
        self.assertTrue(firewall.check_ip_firewall("192.0.2.1", "blacklist", blacklist=blacklist))

    def test_whitelist(self):
        whitelist = ["192.0.2.0/28", "2001:db8::/48"]
        self.assertTrue(firewall.check_ip_firewall("192.0.2.3", "whitelist", whitelist=whitelist))
        self.assertTrue(firewall.check_ip_firewall("2001:db8::5", "whitelist", whitelist=whitelist))
        self.assertFalse(firewall.check_ip_firewall("192.0.2.30", "whitelist", whitelist=whitelist))

    def test_unknown_ip_blocked_only_in_whitelist_mode(self):
        self.assertFalse(firewall.check_ip_firewall("unknown", "whitelist", whitelist=["*"]))
        self.assertTrue(firewall.check_ip_firewall("unknown", "blacklist", blacklist=["*.*.*.*"]))


class ClientIpTests(unittest.TestCase):
    def test_header_priority(self):
        headers = {
            "CF-Connecting-IP": "203.0.113.1",
            "X-Forwarded-For": "198.51.100.1",
            "X-Real-IP": "192.0.2.1",
        }
        self.assertEqual(firewall.resolve_client_ip(headers, "127.0.0.1"), "203.0.113.1")

    def test_forwarded_for_takes_first_element(self):
        headers = {"X-Forwarded-For": "198.51.100.1, 10.0.0.1"}
        self.assertEqual(firewall.resolve_client_ip(headers, "127.0.0.1"), "198.51.100.1")

    def test_invalid_header_falls_through(self):
        headers = {"CF-Connecting-IP": "not-an-ip", "X-Real-IP": "2001:db8::7"}
        self.assertEqual(firewall.resolve_client_ip(headers, "127.0.0.1"), "2001:db8::7")

    def test_unknown_when_nothing_usable(self):
        self.assertEqual(firewall.resolve_client_ip({"X-Forwarded-For": "garbage"}, None), "unknown")


class ApiKeyTests(unittest.TestCase):
    KEYS = {"open": [], "scoped": ["*.example.com", "partner.test"]}

    def test_not_required(self):
        self.assertTrue(firewall.verify_api_key({}, "notes.local", "", {}, False))

    def test_same_origin_needs_no_key(self):
        headers = {"Referer": "https://notes.local/index.html"}
        self.assertTrue(firewall.verify_api_key(headers, "notes.local:8443", "", self.KEYS, True))

    def test_missing_or_unknown_key(self):
        self.assertFalse(firewall.verify_api_key({}, "notes.local", "", self.KEYS, True))
        self.assertFalse(firewall.verify_api_key({}, "notes.local", "nope", self.KEYS, True))

    def test_key_without_domain_restriction(self):
        self.assertTrue(firewall.verify_api_key({}, "notes.local", "open", self.KEYS, True))

    def test_domain_restricted_key(self):
        def check(origin):
            headers = {"Origin": origin} if origin else {}
            return firewall.verify_api_key(headers, "notes.local", "scoped", self.KEYS, True)

        self.assertTrue(check("https://app.example.com"))
        self.assertTrue(check("https://example.com"))
        self.assertTrue(check("http://partner.test:3000"))
        self.assertFalse(check("https://badexample.com"))
        self.assertFalse(check(None))

    def test_match_domain(self):
        self.assertTrue(firewall.match_domain("a.b.example.com", "*.example.com"))
        self.assertFalse(firewall.match_domain("example.com.evil", "*.example.com"))
        self.assertTrue(firewall.match_domain("Example.COM", "example.com"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
