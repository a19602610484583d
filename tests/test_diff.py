"""Tests for canonical comparison and diff rendering."""

from provisioner.diff import attributes_equal, canonicalize, render_diff


class TestCanonicalize:
    """Tests for canonicalize."""

    def test_sorts_keys(self) -> None:
        """Test that mapping keys come out sorted."""
        assert list(canonicalize({"b": 1, "a": 2})) == ["a", "b"]

    def test_lists_are_unordered(self) -> None:
        """Test that list order does not matter."""
        assert canonicalize([3, 1, 2]) == canonicalize([2, 3, 1])

    def test_nested_lists_of_dicts(self) -> None:
        """Test ordering of lists of mappings."""
        a = [{"port": "80"}, {"port": "22"}]
        b = [{"port": "22"}, {"port": "80"}]

        assert canonicalize(a) == canonicalize(b)

    def test_empty_values_dropped(self) -> None:
        """Test that None, empty lists, dicts and strings vanish."""
        assert canonicalize({"a": None, "b": [], "c": {}, "d": "", "e": 0}) == {"e": 0}


class TestAttributesEqual:
    """Tests for attributes_equal."""

    def test_null_vs_empty_is_equal(self) -> None:
        """Test that provider null/empty quirks are not drift."""
        assert attributes_equal({"labels": None, "rules": []}, {})

    def test_value_change_is_drift(self) -> None:
        """Test that a changed value is detected."""
        assert not attributes_equal({"port": "22"}, {"port": "2222"})

    def test_extra_element_is_drift(self) -> None:
        """Test that an additional list element is detected."""
        assert not attributes_equal({"ips": ["a"]}, {"ips": ["a", "b"]})


class TestRenderDiff:
    """Tests for render_diff."""

    def test_no_changes(self) -> None:
        """Test that equal inputs produce an empty diff."""
        diff = render_diff("fw", {"a": [1, 2]}, {"a": [2, 1]})

        assert not diff.has_changes
        assert diff.unified == []

    def test_added_and_removed(self) -> None:
        """Test added/removed line extraction."""
        diff = render_diff("firewall/acme", {"port": "22"}, {"port": "2222"})

        assert diff.has_changes
        assert any('"2222"' in line for line in diff.added)
        assert any('"22"' in line for line in diff.removed)
        assert diff.unified[0].startswith("--- firewall/acme (current)")
        assert diff.to_dict() == {"resource": "firewall/acme", "added": 1, "removed": 1}
