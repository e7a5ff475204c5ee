"""Unit tests for chunk ordering and reassembly."""

from pathlib import Path

import pytest

from video_converter.chunks import (
    UNKNOWN_CHUNK_INDEX,
    discover_chunks,
    extract_chunk_index,
    find_missing_indices,
    merge_chunks,
    order_chunks,
)
from video_converter.errors import FailureStage, MergeError


class TestChunkIndex:
    """Test index extraction from chunk names."""

    def test_plain_number(self):
        assert extract_chunk_index("10.chunk") == 10

    def test_first_digit_run_wins(self):
        assert extract_chunk_index("part7_of_12.chunk") == 7

    def test_leading_zeros(self):
        assert extract_chunk_index("007.chunk") == 7

    def test_no_digits_is_sentinel(self):
        assert extract_chunk_index("header.chunk") == UNKNOWN_CHUNK_INDEX

    def test_only_base_name_is_considered(self):
        assert extract_chunk_index(Path("/uploads/42/abc.chunk")) == UNKNOWN_CHUNK_INDEX


class TestOrdering:
    """Test numeric (not lexicographic) ordering."""

    def test_numeric_order(self):
        chunks = [Path("10.chunk"), Path("2.chunk"), Path("1.chunk")]
        assert [c.name for c in order_chunks(chunks)] == ["1.chunk", "2.chunk", "10.chunk"]

    def test_digitless_sorts_first(self):
        chunks = [Path("0.chunk"), Path("extra.chunk")]
        assert [c.name for c in order_chunks(chunks)] == ["extra.chunk", "0.chunk"]

    def test_ties_keep_discovery_order(self):
        chunks = [Path("a1.chunk"), Path("b1.chunk"), Path("0.chunk")]
        assert [c.name for c in order_chunks(chunks)] == ["0.chunk", "a1.chunk", "b1.chunk"]

    def test_missing_indices(self):
        chunks = [Path("0.chunk"), Path("1.chunk"), Path("4.chunk"), Path("x.chunk")]
        assert find_missing_indices(chunks) == [2, 3]

    def test_no_missing_indices_for_digitless_only(self):
        assert find_missing_indices([Path("a.chunk"), Path("b.chunk")]) == []


class TestDiscovery:
    """Test chunk discovery in an upload directory."""

    def test_discovers_only_matching_files(self, make_upload):
        upload = make_upload({"0.chunk": b"a", "1.chunk": b"b", "notes.txt": b"c"})
        assert [p.name for p in discover_chunks(upload)] == ["0.chunk", "1.chunk"]

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(MergeError):
            discover_chunks(tmp_path / "does-not-exist")


class TestMerge:
    """Test merging chunks into one file."""

    def test_merge_in_numeric_order(self, make_upload, tmp_path):
        upload = make_upload({"1.chunk": b"B", "2.chunk": b"C", "10.chunk": b"D", "0.chunk": b"A"})
        output = tmp_path / "merged.mp4"

        result = merge_chunks(upload, output)

        assert output.read_bytes() == b"ABCD"
        assert result.chunk_count == 4
        assert result.bytes_written == 4
        assert result.missing_indices == list(range(3, 10))

    def test_merge_truncates_existing_output(self, make_upload, tmp_path):
        upload = make_upload({"0.chunk": b"new"})
        output = tmp_path / "merged.mp4"
        output.write_bytes(b"old content that is longer")

        merge_chunks(upload, output)

        assert output.read_bytes() == b"new"

    def test_no_chunks_raises(self, make_upload, tmp_path):
        upload = make_upload({"readme.txt": b"x"})

        with pytest.raises(MergeError) as exc_info:
            merge_chunks(upload, tmp_path / "merged.mp4")

        assert exc_info.value.stage == FailureStage.MERGE

    def test_gap_raises_when_contiguous_required(self, make_upload, tmp_path):
        upload = make_upload({"0.chunk": b"a", "2.chunk": b"c"})

        with pytest.raises(MergeError) as exc_info:
            merge_chunks(upload, tmp_path / "merged.mp4", require_contiguous=True)

        assert "[1]" in str(exc_info.value)

    def test_unreadable_chunk_raises_with_chunk_name(self, make_upload, tmp_path):
        upload = make_upload({"0.chunk": b"a"})
        (upload / "1.chunk").mkdir()

        with pytest.raises(MergeError) as exc_info:
            merge_chunks(upload, tmp_path / "merged.mp4")

        assert exc_info.value.chunk.endswith("1.chunk")
        assert exc_info.value.stage == FailureStage.MERGE

    def test_output_in_missing_directory_raises(self, make_upload, tmp_path):
        upload = make_upload({"0.chunk": b"a"})

        with pytest.raises(MergeError):
            merge_chunks(upload, tmp_path / "missing" / "merged.mp4")

    def test_custom_pattern(self, make_upload, tmp_path):
        upload = make_upload({"part1.bin": b"1", "part0.bin": b"0", "0.chunk": b"x"})
        output = tmp_path / "merged.mp4"

        merge_chunks(upload, output, pattern="part*.bin")

        assert output.read_bytes() == b"01"
