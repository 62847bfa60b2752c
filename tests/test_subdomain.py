"""Tests for subdomain derivation and DNS naming."""

from __future__ import annotations

import pytest

from ddns_service.subdomain import (
    build_acme_challenge_name,
    derive_subdomain,
    format_fqdn,
    is_valid_label,
)


class TestDeriveSubdomain:
    """Tests for derive_subdomain."""

    @pytest.mark.parametrize(
        ("owner_id", "location", "expected"),
        [
            ("acme", "home", "a47763d1"),
            ("acme", "office", "fc623497"),
            ("other", "home", "3fde4476"),
            ("homelab", "primary", "a9675db9"),
        ],
    )
    def test_known_values(self, owner_id, location, expected):
        assert derive_subdomain(owner_id, location) == expected

    def test_deterministic(self):
        assert derive_subdomain("acme", "home") == derive_subdomain("acme", "home")

    def test_distinct_pairs_differ(self):
        label = derive_subdomain("acme", "home")
        assert label != derive_subdomain("acme", "office")
        assert label != derive_subdomain("other", "home")

    def test_shape(self):
        label = derive_subdomain("acme", "home")
        assert len(label) == 8
        assert is_valid_label(label)


class TestNames:
    """Tests for FQDN and challenge name construction."""

    def test_format_fqdn(self):
        assert format_fqdn("a47763d1", "example.com") == "a47763d1.example.com"

    def test_acme_challenge_name(self):
        name = build_acme_challenge_name("a47763d1")
        assert name == "_acme-challenge.a47763d1"
        assert format_fqdn(name, "example.com") == "_acme-challenge.a47763d1.example.com"


class TestIsValidLabel:
    """Tests for is_valid_label."""

    @pytest.mark.parametrize(
        "label",
        ["home", "a", "web-01", "0abc", "a" * 63],
    )
    def test_valid(self, label):
        assert is_valid_label(label) is True

    @pytest.mark.parametrize(
        "label",
        ["", "-home", "home-", "Home", "home.lab", "under_score", "a" * 64],
    )
    def test_invalid(self, label):
        assert is_valid_label(label) is False
