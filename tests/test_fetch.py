"""Tests for resilient fetch and archive extraction."""

import hashlib
import io
import shutil
import tarfile
import zipfile
from pathlib import Path

import pytest

from conftest import FakeRunner, completed
from sandboxer.errors import ArchiveFormatError, ConfigError, FetchError, NoFetchStrategyError
from sandboxer.fetch import (
    FallbackStrategy,
    Fetcher,
    ResumingStrategy,
    SegmentedStrategy,
    archive_format,
    archive_name,
    build_strategies,
    download_and_extract,
    extract_archive,
)

ALL_TOOLS = {"aria2c": "/usr/bin/aria2c", "curl": "/usr/bin/curl", "wget": "/usr/bin/wget"}


def _output_path(command):
    """Destination a fake downloader should write to."""
    if command[0] == "aria2c":
        return Path(command[command.index("-d") + 1]) / command[command.index("-o") + 1]
    flag = "-o" if command[0] == "curl" else "-O"
    return Path(command[command.index(flag) + 1])


def writes(content: bytes, returncode: int = 0):
    def _respond(command):
        _output_path(command).write_bytes(content)
        return completed(returncode, stderr="" if returncode == 0 else "transfer closed")

    return _respond


def copies(source: Path):
    def _respond(command):
        shutil.copyfile(source, _output_path(command))
        return completed()

    return _respond


@pytest.fixture
def payload_tar(tmp_path):
    """A .tar.gz holding payload_1/install.sh."""
    archive = tmp_path / "src" / "payload.tar.gz"
    archive.parent.mkdir()
    with tarfile.open(archive, "w:gz") as tar:
        data = b"#!/bin/sh\necho install\n"
        info = tarfile.TarInfo("payload_1/install.sh")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    return archive


class TestStrategySelection:
    """Tests for picking the first installed downloader."""

    def test_default_order(self):
        assert [s.name for s in build_strategies()] == ["segmented", "resuming", "fallback"]

    def test_all_installed_uses_segmented(self):
        fetcher = Fetcher(FakeRunner(tools=ALL_TOOLS))
        assert isinstance(fetcher.select_strategy(), SegmentedStrategy)

    def test_without_aria2c_uses_curl(self):
        fetcher = Fetcher(FakeRunner(tools={"curl": "/usr/bin/curl", "wget": "/usr/bin/wget"}))
        assert isinstance(fetcher.select_strategy(), ResumingStrategy)

    def test_only_wget(self):
        fetcher = Fetcher(FakeRunner(tools={"wget": "/usr/bin/wget"}))
        assert isinstance(fetcher.select_strategy(), FallbackStrategy)

    def test_no_tools(self, tmp_path):
        fetcher = Fetcher(FakeRunner())
        with pytest.raises(NoFetchStrategyError, match="aria2c, curl, wget"):
            fetcher.fetch("https://example.com/a.tar.gz", tmp_path / "a.tar.gz")

    def test_unknown_strategy_name(self):
        with pytest.raises(ConfigError, match="Unknown fetch strategy 'torrent'"):
            build_strategies({"strategies": ["torrent"]})

    def test_options_reach_commands(self, tmp_path):
        curl = build_strategies({"retries": 7, "retry_delay": 2})[1]
        command = curl.command("https://example.com/f.zip", tmp_path / "f.zip")
        assert command[command.index("--retry") + 1] == "7"
        assert command[command.index("--retry-delay") + 1] == "2"
        assert "-C" in command


class TestFetch:
    """Tests for Fetcher.fetch()."""

    def test_success(self, tmp_path):
        runner = FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], writes(b"data"))
        dest = tmp_path / "dl" / "f.tar.gz"
        assert Fetcher(runner).fetch("https://example.com/f.tar.gz", dest) == dest
        assert dest.read_bytes() == b"data"
        assert runner.calls[0][0] == "curl"

    def test_failure_leaves_no_partial_file(self, tmp_path):
        runner = FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], writes(b"part", returncode=18))
        dest = tmp_path / "f.tar.gz"
        with pytest.raises(FetchError, match="curl failed"):
            Fetcher(runner).fetch("https://example.com/f.tar.gz", dest)
        assert not dest.exists()

    def test_aria2c_control_file_removed(self, tmp_path):
        def _fail(command):
            _output_path(command).write_bytes(b"part")
            _output_path(command).with_name("f.tar.gz.aria2").write_bytes(b"ctl")
            return completed(1, stderr="error")

        runner = FakeRunner(tools=ALL_TOOLS).respond(["aria2c"], _fail)
        with pytest.raises(FetchError):
            Fetcher(runner).fetch("https://example.com/f.tar.gz", tmp_path / "f.tar.gz")
        assert list(tmp_path.iterdir()) == []

    def test_success_without_file_is_failure(self, tmp_path):
        runner = FakeRunner(tools={"wget": "/usr/bin/wget"})
        with pytest.raises(FetchError, match="missing or empty"):
            Fetcher(runner).fetch("https://example.com/f.zip", tmp_path / "f.zip")

    def test_empty_file_is_failure(self, tmp_path):
        runner = FakeRunner(tools={"wget": "/usr/bin/wget"}).respond(["wget"], writes(b""))
        dest = tmp_path / "f.zip"
        with pytest.raises(FetchError, match="missing or empty"):
            Fetcher(runner).fetch("https://example.com/f.zip", dest)
        assert not dest.exists()

    def test_checksum_verified(self, tmp_path):
        runner = FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], writes(b"data"))
        digest = hashlib.sha256(b"data").hexdigest()
        Fetcher(runner).fetch("https://example.com/f.zip", tmp_path / "f.zip", sha256=digest.upper())

    def test_checksum_mismatch(self, tmp_path):
        runner = FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], writes(b"data"))
        dest = tmp_path / "f.zip"
        with pytest.raises(FetchError, match="Checksum mismatch"):
            Fetcher(runner).fetch("https://example.com/f.zip", dest, sha256="0" * 64)
        assert not dest.exists()

    def test_first_strategy_failure_is_final_by_default(self, tmp_path):
        runner = (
            FakeRunner(tools=ALL_TOOLS)
            .respond(["aria2c"], completed(1, stderr="boom"))
            .respond(["curl"], writes(b"data"))
        )
        with pytest.raises(FetchError):
            Fetcher(runner).fetch("https://example.com/f.zip", tmp_path / "f.zip")
        assert [call[0] for call in runner.calls] == ["aria2c"]

    def test_fall_through_tries_next_tool(self, tmp_path):
        runner = (
            FakeRunner(tools=ALL_TOOLS)
            .respond(["aria2c"], completed(1, stderr="boom"))
            .respond(["curl"], writes(b"data"))
        )
        fetcher = Fetcher.from_config(runner, {"fall_through": True})
        dest = fetcher.fetch("https://example.com/f.zip", tmp_path / "f.zip")
        assert dest.read_bytes() == b"data"
        assert [call[0] for call in runner.calls] == ["aria2c", "curl"]


class TestArchives:
    """Tests for archive classification and extraction."""

    @pytest.mark.parametrize(
        "name,kind",
        [
            ("a.tar.gz", "tar"),
            ("a.TGZ", "tar"),
            ("a.tar.xz", "tar"),
            ("a.tar.bz2", "tar"),
            ("a.tar", "tar"),
            ("a.zip", "zip"),
        ],
    )
    def test_known_suffixes(self, name, kind):
        assert archive_format(Path(name)) == kind

    @pytest.mark.parametrize("name", ["a.rar", "a.7z", "tarball", "a.gz"])
    def test_unknown_suffix(self, name):
        with pytest.raises(ArchiveFormatError):
            archive_format(Path(name))

    def test_extract_tar(self, payload_tar, tmp_path):
        dest = extract_archive(payload_tar, tmp_path / "out")
        assert (dest / "payload_1" / "install.sh").read_text().startswith("#!/bin/sh")

    def test_extract_zip(self, tmp_path):
        archive = tmp_path / "a.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("dir/file.txt", "hello")
        extract_archive(archive, tmp_path / "out")
        assert (tmp_path / "out" / "dir" / "file.txt").read_text() == "hello"

    def test_member_escaping_destination_rejected(self, tmp_path):
        archive = tmp_path / "evil.zip"
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("../evil.txt", "x")
        with pytest.raises(ArchiveFormatError, match="escapes"):
            extract_archive(archive, tmp_path / "out")
        assert not (tmp_path / "evil.txt").exists()

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / "broken.tar.gz"
        archive.write_bytes(b"not a tarball")
        with pytest.raises(FetchError, match="Failed to extract"):
            extract_archive(archive, tmp_path / "out")

    def test_archive_name(self):
        assert archive_name("https://example.com/files/v6.0/ParaView.tar.gz?x=1") == "ParaView.tar.gz"
        with pytest.raises(ConfigError):
            archive_name("https://example.com/")


class TestDownloadAndExtract:
    """Tests for the combined download + extract step."""

    def test_unknown_format_fails_before_download(self, tmp_path):
        runner = FakeRunner(tools=ALL_TOOLS)
        with pytest.raises(ArchiveFormatError):
            download_and_extract(Fetcher(runner), "https://example.com/a.rar", tmp_path / "out", tmp_path)
        assert runner.calls == []

    def test_archive_removed_after_extract(self, tmp_path, payload_tar):
        runner = FakeRunner(tools={"curl": "/usr/bin/curl"}).respond(["curl"], copies(payload_tar))
        downloads = tmp_path / "downloads"
        dest = download_and_extract(
            Fetcher(runner), "https://example.com/payload.tar.gz", tmp_path / "out", downloads
        )
        assert (dest / "payload_1" / "install.sh").exists()
        assert not (downloads / "payload.tar.gz").exists()
