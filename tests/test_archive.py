import io
import zipfile

from converter.archive import iter_zip


def test_entries_in_order_with_extra_members(tmp_path):
    first = tmp_path / "1.webp"
    second = tmp_path / "2.webp"
    first.write_bytes(b"first" * 100)
    second.write_bytes(b"second" * 100)
    data = b"".join(iter_zip([(first, "b.webp"), (second, "a.webp")], {"FAILED.txt": b"c.png: bad\n"}))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == ["b.webp", "a.webp", "FAILED.txt"]
        assert zf.read("b.webp") == b"first" * 100
        assert zf.read("a.webp") == b"second" * 100
        assert zf.read("FAILED.txt") == b"c.png: bad\n"
        assert zf.testzip() is None


def test_large_file_is_streamed_in_several_chunks(tmp_path):
    big = tmp_path / "big.webp"
    payload = bytes(range(256)) * 4096
    big.write_bytes(payload)
    chunks = list(iter_zip([(big, "big.webp")], chunk_size=64 * 1024))
    assert len(chunks) > 1
    with zipfile.ZipFile(io.BytesIO(b"".join(chunks))) as zf:
        assert zf.read("big.webp") == payload


def test_empty_archive(tmp_path):
    data = b"".join(iter_zip([]))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == []
