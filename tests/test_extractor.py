"""Tests for upload ingestion and safe ZIP extraction."""

import zipfile
from pathlib import Path

import pytest

from sitehost.errors import ExtractionError, ExtractionErrorKind
from sitehost.extractor import (
    check_entry_name,
    decode_entry_name,
    extract_archive,
    find_entry_file,
    ingest_upload,
    is_zip_upload,
)

LIMIT = 1024 * 1024


def write_zip(path: Path, entries: dict) -> Path:
    """Write a ZIP whose entries map names to str/bytes content (None = directory)."""
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, content in entries.items():
            if content is None:
                zf.writestr(zipfile.ZipInfo(name.rstrip("/") + "/"), b"")
            else:
                zf.writestr(name, content)
    return path


def write_legacy_zip(path: Path, raw_name: bytes, content: bytes = b"<html></html>") -> Path:
    """Write a ZIP with one entry whose name bytes are stored without the UTF-8 flag."""
    placeholder = "X" * (len(raw_name) - 5) + ".html"
    assert len(placeholder.encode("ascii")) == len(raw_name)
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr(placeholder, content)
    path.write_bytes(path.read_bytes().replace(placeholder.encode("ascii"), raw_name))
    return path


@pytest.fixture
def dest(tmp_path):
    return tmp_path / "site"


class TestUploadDetection:
    """Tests for is_zip_upload."""

    def test_zip_content_types(self):
        assert is_zip_upload("bundle", "application/zip")
        assert is_zip_upload("bundle", "application/x-zip-compressed")

    def test_zip_extension(self):
        """A .zip filename is enough, whatever the declared type."""
        assert is_zip_upload("Site.ZIP", "application/octet-stream")

    def test_html_is_not_zip(self):
        assert not is_zip_upload("index.html", "text/html")
        assert not is_zip_upload(None, None)


class TestEntryNames:
    """Tests for check_entry_name and decode_entry_name."""

    @pytest.mark.parametrize("name", [
        "../evil.html",
        "a/../../evil.html",
        "..\\evil.html",
        "/etc/passwd",
        "\\windows\\evil.html",
        "C:/evil.html",
        "C:evil.html",
        "bad\x00name.html",
    ])
    def test_rejects_escaping_names(self, name):
        """Traversal, absolute paths, drive letters and NUL bytes are malicious."""
        with pytest.raises(ExtractionError) as exc_info:
            check_entry_name(name)
        assert exc_info.value.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE

    def test_allows_dots_inside_names(self):
        """Only whole '..' segments count as traversal."""
        assert check_entry_name("a..b/c...html") == "a..b/c...html"

    def test_normalizes_backslashes(self):
        assert check_entry_name("css\\site.css") == "css/site.css"

    def test_decodes_legacy_gbk_name(self, tmp_path):
        """Names without the UTF-8 flag are decoded with the legacy charset."""
        archive = write_legacy_zip(tmp_path / "a.zip", "中文.html".encode("gbk"))
        with zipfile.ZipFile(archive) as zf:
            info = zf.infolist()[0]
        assert not info.flag_bits & 0x800
        assert decode_entry_name(info, "gbk") == "中文.html"

    def test_keeps_utf8_flagged_name(self, tmp_path):
        archive = write_zip(tmp_path / "a.zip", {"页面.html": "x"})
        with zipfile.ZipFile(archive) as zf:
            info = zf.infolist()[0]
        assert decode_entry_name(info, "gbk") == "页面.html"

    def test_undecodable_legacy_name_falls_back(self, tmp_path):
        """Bytes the legacy charset rejects keep the CP437 reading."""
        archive = write_legacy_zip(tmp_path / "a.zip", b"\xff\xff.html")
        with zipfile.ZipFile(archive) as zf:
            info = zf.infolist()[0]
        assert decode_entry_name(info, "gbk") == info.orig_filename


class TestExtractArchive:
    """Tests for extract_archive."""

    def test_extracts_files_and_counts_bytes(self, tmp_path, dest):
        archive = write_zip(tmp_path / "a.zip", {
            "index.html": "<html>hi</html>",
            "css/": None,
            "css/site.css": "body{}",
        })
        result = extract_archive(archive, dest, LIMIT)

        assert result.entry_file == "index.html"
        assert result.total_bytes == len("<html>hi</html>") + len("body{}")
        assert (dest / "css" / "site.css").read_text() == "body{}"

    def test_preserves_binary_content(self, tmp_path, dest):
        payload = bytes(range(256)) * 10
        archive = write_zip(tmp_path / "a.zip", {"img/logo.png": payload})
        extract_archive(archive, dest, LIMIT)
        assert (dest / "img" / "logo.png").read_bytes() == payload

    def test_zip_slip_rejected_and_nothing_written(self, tmp_path, dest):
        """A traversal entry anywhere in the archive rejects the whole archive."""
        archive = write_zip(tmp_path / "a.zip", {
            "index.html": "ok",
            "../../escaped.html": "pwned",
        })
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)

        assert exc_info.value.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE
        assert exc_info.value.http_status == 403
        assert not dest.exists()
        assert not (tmp_path / "escaped.html").exists()
        assert not (tmp_path.parent / "escaped.html").exists()

    def test_zip_slip_in_legacy_encoded_name(self, tmp_path, dest):
        """Traversal is checked on the decoded name, not only the raw bytes."""
        archive = write_legacy_zip(tmp_path / "a.zip", "../中文.html".encode("gbk"))
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE
        assert not (tmp_path / "中文.html").exists()

    def test_absolute_entry_rejected(self, tmp_path, dest):
        archive = write_zip(tmp_path / "a.zip", {"/tmp/evil.html": "x"})
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE

    def test_symlink_entry_rejected(self, tmp_path, dest):
        archive = tmp_path / "a.zip"
        info = zipfile.ZipInfo("link.html")
        info.external_attr = (0o120777 << 16)
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr(info, "/etc/passwd")

        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE
        assert not dest.exists()

    def test_quota_exceeded_leaves_nothing(self, tmp_path, dest):
        """Going over the byte ceiling removes the partial extraction."""
        archive = write_zip(tmp_path / "a.zip", {
            "index.html": "x" * 600,
            "big.bin": "y" * 600,
        })
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, 1000)

        assert exc_info.value.kind == ExtractionErrorKind.QUOTA_EXCEEDED
        assert exc_info.value.http_status == 413
        assert not dest.exists()

    def test_exact_quota_is_allowed(self, tmp_path, dest):
        archive = write_zip(tmp_path / "a.zip", {"index.html": "x" * 1000})
        assert extract_archive(archive, dest, 1000).total_bytes == 1000

    def test_too_many_entries(self, tmp_path, dest):
        archive = write_zip(tmp_path / "a.zip", {f"f{i}.html": "x" for i in range(5)})
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT, max_entries=4)
        assert exc_info.value.kind == ExtractionErrorKind.QUOTA_EXCEEDED

    def test_not_a_zip(self, tmp_path, dest):
        archive = tmp_path / "a.zip"
        archive.write_bytes(b"definitely not a zip file")
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.UNSUPPORTED_FORMAT
        assert exc_info.value.http_status == 400
        assert not dest.exists()

    def test_conflicting_entries(self, tmp_path, dest):
        """A file and a directory with the same path are refused."""
        archive = write_zip(tmp_path / "a.zip", {"a": "file", "a/b.html": "x"})
        with pytest.raises(ExtractionError) as exc_info:
            extract_archive(archive, dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.UNSUPPORTED_FORMAT
        assert not dest.exists()

    def test_legacy_names_written_decoded(self, tmp_path, dest):
        archive = write_legacy_zip(tmp_path / "a.zip", "中文.html".encode("gbk"), b"<p>hi</p>")
        extract_archive(archive, dest, LIMIT, legacy_encoding="gbk")
        assert (dest / "中文.html").read_bytes() == b"<p>hi</p>"


class TestFindEntryFile:
    """Tests for find_entry_file."""

    def test_root_index_wins(self, tmp_path):
        (tmp_path / "index.html").write_text("root")
        (tmp_path / "a").mkdir()
        (tmp_path / "a" / "index.html").write_text("nested")
        assert find_entry_file(tmp_path) == "index.html"

    def test_shallowest_nested_index(self, tmp_path):
        """The shallowest match wins over a lexically earlier deeper one."""
        (tmp_path / "a" / "x").mkdir(parents=True)
        (tmp_path / "a" / "x" / "index.html").write_text("deep")
        (tmp_path / "b").mkdir()
        (tmp_path / "b" / "index.html").write_text("shallow")
        assert find_entry_file(tmp_path) == "b/index.html"

    def test_lexical_tie_break(self, tmp_path):
        for name in ("zeta", "alpha"):
            (tmp_path / name).mkdir()
            (tmp_path / name / "index.html").write_text(name)
        assert find_entry_file(tmp_path) == "alpha/index.html"

    def test_fallback_when_missing(self, tmp_path):
        (tmp_path / "page.html").write_text("no index")
        assert find_entry_file(tmp_path) == "index.html"

    def test_archive_with_nested_index(self, tmp_path, dest):
        archive = write_zip(tmp_path / "a.zip", {
            "dist/index.html": "<html></html>",
            "dist/app.js": "1",
        })
        assert extract_archive(archive, dest, LIMIT).entry_file == "dist/index.html"


class TestIngestUpload:
    """Tests for ingest_upload."""

    def test_single_html_becomes_index(self, tmp_path, dest):
        upload = tmp_path / "upload.tmp"
        upload.write_bytes(b"<html>page</html>")

        result = ingest_upload(upload, "page.html", "text/html; charset=utf-8", dest, LIMIT)

        assert result.entry_file == "index.html"
        assert result.total_bytes == len(b"<html>page</html>")
        assert (dest / "index.html").read_bytes() == b"<html>page</html>"
        assert not upload.exists()

    def test_html_extension_without_html_type_rejected(self, tmp_path, dest):
        """The filename alone never makes an upload HTML."""
        upload = tmp_path / "upload.tmp"
        upload.write_bytes(b"<html></html>")
        with pytest.raises(ExtractionError) as exc_info:
            ingest_upload(upload, "page.html", "application/octet-stream", dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.UNSUPPORTED_FORMAT
        assert not (dest / "index.html").exists()

    def test_other_types_rejected(self, tmp_path, dest):
        upload = tmp_path / "upload.tmp"
        upload.write_bytes(b"\x89PNG")
        with pytest.raises(ExtractionError) as exc_info:
            ingest_upload(upload, "logo.png", "image/png", dest, LIMIT)
        assert exc_info.value.kind == ExtractionErrorKind.UNSUPPORTED_FORMAT

    def test_oversized_html_rejected(self, tmp_path, dest):
        upload = tmp_path / "upload.tmp"
        upload.write_bytes(b"x" * 101)
        with pytest.raises(ExtractionError) as exc_info:
            ingest_upload(upload, "page.html", "text/html", dest, 100)
        assert exc_info.value.kind == ExtractionErrorKind.QUOTA_EXCEEDED

    def test_zip_by_extension(self, tmp_path, dest):
        upload = write_zip(tmp_path / "upload.zip", {"index.html": "<html></html>"})
        result = ingest_upload(upload, "site.zip", "application/octet-stream", dest, LIMIT)
        assert result.entry_file == "index.html"
        assert (dest / "index.html").is_file()
