"""Tests for the folder sync runner."""

import logging

import pytest

from services.doc_sync.doc_sync import collect_files, guess_mime, sync_folder
from shared.helper.HelperConfig import HelperConfig
from shared.logging.logging_setup import ColorLogger

from tests.samples import GUIDE, HANDBOOK


@pytest.fixture
def runner_config(env) -> HelperConfig:
    return HelperConfig(logger=ColorLogger(logging.getLogger("doc_sync.tests.runner")))


@pytest.fixture
def source_dir(tmp_path):
    (tmp_path / "sub").mkdir()
    (tmp_path / "guide.md").write_text(GUIDE, encoding="utf-8")
    (tmp_path / "sub" / "handbook.txt").write_text(HANDBOOK, encoding="utf-8")
    (tmp_path / "scan.pdf").write_bytes(b"%PDF-1.7")
    return tmp_path


class TestFolderHelpers:
    """Tests for file discovery and mime guessing."""

    def test_collect_files_filters_extensions(self, source_dir):
        """Test files are listed by relative name and filtered by extension."""
        files = collect_files(str(source_dir), [".md", ".txt"])

        assert [name for name, _ in files] == ["guide.md", "sub/handbook.txt"]
        assert len(collect_files(str(source_dir), [])) == 3

    @pytest.mark.parametrize("path, mime", [("a.md", "text/markdown"), ("b.txt", "text/plain"), ("c.unknownext", "text/plain")])
    def test_guess_mime(self, path, mime):
        """Test markdown files get a markdown mime and unknown ones fall back to text."""
        assert guess_mime(path) == mime


class TestSyncFolder:
    """Tests for mirroring a folder into a collection."""

    @pytest.mark.asyncio
    async def test_first_run_uploads_everything(self, service, runner_config, source_dir):
        """Test the collection is created and every matching file is synced."""
        await sync_folder(service, runner_config, str(source_dir), "mirror")

        [collection] = await service.list_collections()
        documents = (await service.list_documents(collection.collection_id)).data
        assert collection.name == "mirror"
        assert sorted(d.name for d in documents) == ["guide.md", "sub/handbook.txt"]
        assert {d.status.value for d in documents} == {"synced"}

    @pytest.mark.asyncio
    async def test_second_run_updates_changes_and_reconciles(self, service, runner_config, source_dir, index, embed_client):
        """Test only changed files are re-embedded and orphan points are removed."""
        await sync_folder(service, runner_config, str(source_dir), "mirror")
        [collection] = await service.list_collections()
        index.points["orphan"] = {
            "id": "orphan",
            "vector": [0.1, 0.2, 0.3, 0.4],
            "payload": {"doc_id": "gone", "collection_id": collection.collection_id, "chunk_index": 0, "content": "x", "title_chain": []},
        }
        (source_dir / "guide.md").write_text(GUIDE.replace("Call the tool.", "Call the tool twice."), encoding="utf-8")
        calls_before = embed_client.call_count

        await sync_folder(service, runner_config, str(source_dir), "mirror")

        documents = {d.name: d for d in (await service.list_documents(collection.collection_id)).data}
        assert "twice" in documents["guide.md"].content
        assert documents["guide.md"].status.value == "synced"
        assert embed_client.call_count == calls_before + 1
        assert "orphan" not in index.points
        assert len(await service.list_collections()) == 1
