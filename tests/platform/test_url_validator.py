import pytest

from app.platform.exceptions import SecurityError
from app.platform.utils.url_validator import assert_url_security, normalize_url, validate_url_security


class TestValidateUrlSecurity:
    """SSRF gate: every rejection names the rule that was violated."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com",
            "http://example.com/path?q=1",
            "https://sub.example.co.uk:8443/terms",
            "https://8.8.8.8/",
        ],
    )
    def test_public_urls_pass(self, url):
        assert validate_url_security(url) == (True, "")

    @pytest.mark.parametrize(
        "url, reason",
        [
            ("http://127.0.0.1/admin", "Localhost and loopback addresses are not allowed"),
            ("http://127.10.0.1/", "Localhost and loopback addresses are not allowed"),
            ("http://localhost:8000", "Localhost and loopback addresses are not allowed"),
            ("http://[::1]/", "Localhost and loopback addresses are not allowed"),
            ("http://0.0.0.0/", "Localhost and loopback addresses are not allowed"),
            ("http://169.254.169.254/latest/meta-data", "Cloud metadata endpoints are not allowed"),
            ("http://metadata.google.internal/", "Cloud metadata endpoints are not allowed"),
            ("http://10.1.2.3/", "Private IP range (10.0.0.0/8) is not allowed"),
            ("http://172.16.0.1/", "Private IP range (172.16.0.0/12) is not allowed"),
            ("http://172.31.255.255/", "Private IP range (172.16.0.0/12) is not allowed"),
            ("http://192.168.1.1/", "Private IP range (192.168.0.0/16) is not allowed"),
            ("http://169.254.1.1/", "Link-local IP range (169.254.0.0/16) is not allowed"),
            ("http://printer.local/", "Internal hostnames are not allowed"),
            ("http://db.corp/", "Internal hostnames are not allowed"),
            ("http://2130706433/", "Localhost and loopback addresses are not allowed"),
            ("http://0x7f000001/", "Localhost and loopback addresses are not allowed"),
            ("http://0177.0.0.1/", "Localhost and loopback addresses are not allowed"),
            ("http://127.1/", "Localhost and loopback addresses are not allowed"),
            ("http://10.1/", "Private IP range (10.0.0.0/8) is not allowed"),
            ("http://0xa9.0xfe.0xa9.0xfe/", "Link-local IP range (169.254.0.0/16) is not allowed"),
        ],
    )
    def test_blocked_hosts_are_rejected_with_reason(self, url, reason):
        assert validate_url_security(url) == (False, reason)

    def test_172_outside_private_block_is_allowed(self):
        assert validate_url_security("http://172.32.0.1/")[0] is True

    def test_non_http_scheme_rejected(self):
        is_valid, reason = validate_url_security("ftp://example.com/file")
        assert is_valid is False
        assert reason == "Invalid protocol: ftp:. Only http and https are allowed."

    def test_file_scheme_rejected(self):
        assert validate_url_security("file:///etc/passwd")[0] is False

    def test_empty_url_rejected(self):
        assert validate_url_security("   ") == (False, "URL cannot be empty")

    def test_out_of_range_octet_rejected(self):
        assert validate_url_security("http://300.1.1.1/") == (False, "Invalid IP address format")

    def test_numeric_host_that_is_not_an_address_rejected(self):
        assert validate_url_security("http://4294967296/") == (False, "Invalid IP address format")
        assert validate_url_security("http://09.0.0.1/") == (False, "Invalid IP address format")

    def test_public_address_in_decimal_form_passes(self):
        # 134744072 == 8.8.8.8
        assert validate_url_security("http://134744072/") == (True, "")

    def test_names_with_numeric_labels_are_not_addresses(self):
        assert validate_url_security("https://123.example.com/")[0] is True

    def test_assert_raises_security_error(self):
        with pytest.raises(SecurityError) as exc_info:
            assert_url_security("http://10.0.0.5/")
        assert exc_info.value.status_code == 403
        assert "10.0.0.0/8" in exc_info.value.message


class TestNormalizeUrl:
    def test_equivalent_variants_share_one_canonical_form(self):
        variants = [
            "https://Example.com/Terms/?b=2&a=1",
            "https://example.com/Terms?a=1&b=2#section-3",
            "HTTPS://EXAMPLE.COM:443/Terms/?b=2&a=1#top",
        ]
        assert {normalize_url(v) for v in variants} == {"https://example.com/Terms?a=1&b=2"}

    def test_root_path_becomes_slash(self):
        assert normalize_url("https://example.com") == "https://example.com/"
        assert normalize_url("https://example.com/") == "https://example.com/"

    def test_non_default_port_is_kept(self):
        assert normalize_url("http://example.com:8080/a/") == "http://example.com:8080/a"

    def test_blank_query_values_are_kept(self):
        assert normalize_url("https://example.com/?z=&a=1") == "https://example.com/?a=1&z="

    @pytest.mark.parametrize(
        "url",
        [
            "https://Example.com/a/b/?z=1&y=2#frag",
            "http://example.com:8080",
            "https://example.com/path//",
            "https://user@example.com/x?k=v&k=w",
        ],
    )
    def test_idempotent(self, url):
        once = normalize_url(url)
        assert normalize_url(once) == once
