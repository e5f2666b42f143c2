import io
import os
import tarfile
import time
import zipfile

import pytest

from mcfleet.archives import archive_format, compress, extract, resolve_inside, submit_compress
from mcfleet.errors import ValidationError
from mcfleet.jobs import JobManager, JobStatus


@pytest.fixture
def root(tmp_path):
    data = tmp_path / "minecraft-server"
    (data / "world" / "region").mkdir(parents=True)
    (data / "world" / "level.dat").write_bytes(b"level")
    (data / "world" / "region" / "r.0.0.mca").write_bytes(b"chunk")
    (data / "server.properties").write_text("motd=hi\n")
    return data


@pytest.mark.parametrize("rel", ["../outside", "world/../../x", "/../../etc/passwd"])
def test_paths_outside_root_are_denied(root, rel):
    with pytest.raises(ValidationError):
        resolve_inside(str(root), rel)


def test_paths_inside_root_resolve(root):
    assert resolve_inside(str(root), "world").endswith("world")
    assert resolve_inside(str(root), "") == str(root.resolve())


@pytest.mark.parametrize(
    "name,fmt", [("a.zip", "zip"), ("a.tar", "tar"), ("a.tar.gz", "tar.gz"), ("a.TGZ", "tar.gz")]
)
def test_archive_format(name, fmt):
    assert archive_format(name) == fmt


def test_archive_format_rejects_unknown():
    with pytest.raises(ValueError):
        archive_format("a.rar")


def test_compress_directory_next_to_target(root):
    result = compress(str(root), "world")

    assert result["filename"] == "world.zip"
    with zipfile.ZipFile(root / "world.zip") as zf:
        assert sorted(zf.namelist()) == ["level.dat", "region/r.0.0.mca"]
    assert result["size"] == (root / "world.zip").stat().st_size


def test_compress_whole_root_skips_its_own_archive(root):
    compress(str(root), "", name="backup.zip")
    with zipfile.ZipFile(root / "backup.zip") as zf:
        names = zf.namelist()
    assert "backup.zip" not in names
    assert "server.properties" in names


def test_extract_zip_and_tar(root):
    compress(str(root), "world")
    extract(str(root), "world.zip", "restored")
    assert (root / "restored" / "region" / "r.0.0.mca").read_bytes() == b"chunk"

    with tarfile.open(root / "plugins.tar.gz", "w:gz") as tf:
        payload = b"plugin"
        info = tarfile.TarInfo("plugins/a.jar")
        info.size = len(payload)
        tf.addfile(info, io.BytesIO(payload))
    extract(str(root), "plugins.tar.gz")
    assert (root / "plugins" / "a.jar").read_bytes() == b"plugin"


def test_extract_rejects_escaping_members(root):
    with zipfile.ZipFile(root / "evil.zip", "w") as zf:
        zf.writestr("../../evil.txt", "x")

    with pytest.raises(ValidationError):
        extract(str(root), "evil.zip")
    assert not (root.parent.parent / "evil.txt").exists()


def test_submit_validates_paths_before_queueing(settings, bus):
    jobs = JobManager(bus)
    with pytest.raises(ValidationError):
        submit_compress(jobs, settings, "w1", "../../etc")
    assert jobs.active_job("w1") is None


def test_submitted_compress_runs_in_background(settings, bus):
    data = settings.server_data_dir("w1")
    os.makedirs(os.path.join(data, "world"))
    with open(os.path.join(data, "world", "level.dat"), "wb") as fh:
        fh.write(b"level")

    jobs = JobManager(bus)
    job = submit_compress(jobs, settings, "w1", "world")

    deadline = time.monotonic() + 5
    while jobs.get(job.id).status is JobStatus.RUNNING and time.monotonic() < deadline:
        time.sleep(0.01)
    assert jobs.get(job.id).status is JobStatus.COMPLETED
    assert os.path.exists(os.path.join(data, "world.zip"))
