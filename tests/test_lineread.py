import os

import pytest

from usernet.lineread import LINEREAD_BUFFER_SIZE, LineReader, LineTooLongError


@pytest.fixture
def open_data(tmp_path):
    fds = []

    def _open(data: bytes) -> int:
        path = tmp_path / f"data{len(fds)}"
        path.write_bytes(data)
        fd = os.open(path, os.O_RDONLY)
        fds.append(fd)
        return fd

    yield _open
    for fd in fds:
        os.close(fd)


def test_lines_in_order(open_data):
    reader = LineReader(open_data(b"a\nbb\n\nlast"))
    assert reader.get() == "a"
    assert reader.get() == "bb"
    assert reader.get() == ""
    assert reader.get() == "last"
    assert reader.get() is None


def test_trailing_newline_gives_no_extra_line(open_data):
    reader = LineReader(open_data(b"one\ntwo\n"))
    assert list(reader) == ["one", "two"]


def test_empty_file(open_data):
    assert LineReader(open_data(b"")).get() is None


def test_many_lines_beyond_buffer(open_data):
    lines = [f"line number {i} " + "x" * (i % 50) for i in range(2000)]
    data = "\n".join(lines).encode() + b"\n"
    assert len(data) > LINEREAD_BUFFER_SIZE
    assert list(LineReader(open_data(data))) == lines


def test_longest_line_fits(open_data):
    line = "y" * (LINEREAD_BUFFER_SIZE - 1)
    reader = LineReader(open_data(line.encode() + b"\nnext\n"))
    assert reader.get() == line
    assert reader.get() == "next"


def test_line_too_long(open_data):
    reader = LineReader(open_data(b"z" * (LINEREAD_BUFFER_SIZE + 100)))
    with pytest.raises(LineTooLongError):
        reader.get()


def test_read_error_propagates():
    r, w = os.pipe()
    os.close(r)
    os.close(w)
    with pytest.raises(OSError):
        LineReader(r).get()