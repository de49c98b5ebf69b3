import pytest

from briefcast.services.audio.errors import SectionBoundaryError
from briefcast.services.audio.sections import boundaries_for, section_ranges


def _sizes(ranges):
    return [end - start for start, end in ranges]


class TestSectionRanges:
    def test_no_boundaries_is_one_section(self):
        assert _sizes(section_ranges(7, [])) == [7]

    def test_two_cuts_make_three_sections(self):
        assert section_ranges(7, [2, 5]) == [(0, 2), (2, 5), (5, 7)]
        assert _sizes(section_ranges(7, [2, 5])) == [2, 3, 2]

    def test_cuts_at_the_edges_yield_empty_ranges(self):
        assert _sizes(section_ranges(4, [0, 4])) == [0, 4, 0]

    @pytest.mark.parametrize("cuts", [[3, 3], [5, 2], [-1], [8], [1.5]])
    def test_invalid_boundaries(self, cuts):
        with pytest.raises(SectionBoundaryError):
            section_ranges(7, cuts)

    def test_boundary_error_is_a_value_error(self):
        with pytest.raises(ValueError):
            section_ranges(3, [2, 1])

    def test_needs_at_least_one_chunk(self):
        with pytest.raises(SectionBoundaryError):
            section_ranges(0, [])


def test_boundaries_for_section_chunk_counts():
    assert boundaries_for([2, 3, 2]) == [2, 5]
    assert boundaries_for([7]) == []
