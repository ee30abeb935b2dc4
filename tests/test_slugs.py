import pytest

from streamline.slugs import (
    SLUG_MAX_LENGTH,
    generate_slug,
    generate_unique_slug,
    is_valid_slug,
)


class TestGenerateSlug:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("My Channel", "my-channel"),
            ("  Daily   Vlog!! ", "daily-vlog"),
            ("--Tech__Reviews--", "tech-reviews"),
            ("Café 2024", "caf-2024"),
        ],
    )
    def test_names(self, name, expected):
        assert generate_slug(name) == expected

    def test_empty_uses_fallback(self):
        assert generate_slug("!!!") == "my-project"
        assert generate_slug("", fallback="teamspace") == "teamspace"

    def test_length_is_capped_without_trailing_hyphen(self):
        slug = generate_slug("a" * 49 + " b" * 10)
        assert len(slug) <= SLUG_MAX_LENGTH
        assert not slug.endswith("-")


class TestUniqueSlug:
    def test_suffix(self):
        slug = generate_unique_slug("studio")
        assert slug.startswith("studio-")
        assert len(slug) == len("studio-") + 6
        assert is_valid_slug(slug)

    def test_long_base_stays_within_limit(self):
        slug = generate_unique_slug("x" * SLUG_MAX_LENGTH)
        assert len(slug) <= SLUG_MAX_LENGTH
        assert is_valid_slug(slug)


class TestIsValidSlug:
    @pytest.mark.parametrize("value", ["a", "abc", "my-channel", "v2-launch"])
    def test_valid(self, value):
        assert is_valid_slug(value)

    @pytest.mark.parametrize("value", ["", "-abc", "abc-", "My-Channel", "a_b", "a" * 51])
    def test_invalid(self, value):
        assert not is_valid_slug(value)
