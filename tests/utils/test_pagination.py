"""Unit tests for page windowing helpers."""

import pytest

from surveyqc.utils.pagination import page_count, paginate


class TestPagination:
    """Test suite for page_count and paginate."""

    def test_page_count_rounds_up(self):
        """Test that a partial last page counts as a page."""
        assert page_count(101, 50) == 3
        assert page_count(100, 50) == 2

    def test_page_count_empty_collection_has_one_page(self):
        """Test that an empty collection still shows one (empty) page."""
        assert page_count(0, 25) == 1

    def test_page_count_rejects_non_positive_size(self):
        """Test that a zero page size is rejected."""
        with pytest.raises(ValueError):
            page_count(10, 0)

    def test_paginate_returns_requested_page(self):
        """Test slicing of a middle page."""
        items = list(range(10))
        assert paginate(items, 2, 3) == [3, 4, 5]

    def test_paginate_clamps_out_of_range_pages(self):
        """Test that pages outside the valid range are clamped."""
        items = list(range(10))
        assert paginate(items, 99, 4) == [8, 9]
        assert paginate(items, 0, 4) == [0, 1, 2, 3]
