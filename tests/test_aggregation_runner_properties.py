"""
Property-based tests for the Aggregation Runner module.

Runs complete passes against an httpx.MockTransport serving in-memory lists
to verify pass metrics, failure isolation, conditional fetches, idempotent
reruns and the single-pass guarantee.
"""

import asyncio
import hashlib
import tempfile
from pathlib import Path
from typing import Optional

import httpx
from hypothesis import given, settings
from hypothesis import strategies as st

from hosts_aggregator.aggregation_runner import AggregationRunner
from hosts_aggregator.backoff import BackoffPolicy
from hosts_aggregator.config import FetchConfig, OutputConfig, ScheduleConfig
from hosts_aggregator.dedup_merger import DedupMerger
from hosts_aggregator.enums import EntryType, FetchStatus, PassStatus, TriggeredBy
from hosts_aggregator.exceptions import (
    AggregationFailedError,
    PassAlreadyRunningError,
    PersistenceError,
)
from hosts_aggregator.file_writer import UnifiedFileWriter
from hosts_aggregator.health_monitor import HealthMonitor
from hosts_aggregator.host_store import HostStore
from hosts_aggregator.source_fetcher import SourceFetcher


BASE_URL = "https://lists.example"

TIMEOUT = "timeout"


class ListServer:
    """Serves list bodies by URL path; ints are bare status codes."""

    def __init__(self, lists: dict, use_etags: bool = True) -> None:
        self.lists = dict(lists)
        self.use_etags = use_etags
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.lists.get(request.url.path)
        if item is None:
            return httpx.Response(404)
        if item == TIMEOUT:
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(item, int):
            return httpx.Response(item)

        body = item.encode("utf-8") if isinstance(item, str) else item
        headers = {}
        if self.use_etags:
            etag = '"' + hashlib.sha256(body).hexdigest()[:16] + '"'
            if request.headers.get("if-none-match") == etag:
                return httpx.Response(304, headers={"ETag": etag})
            headers["ETag"] = etag
        return httpx.Response(200, content=body, headers=headers)


def build_runner(
    handler,
    output_dir: str,
    fetch_config: Optional[FetchConfig] = None,
    store: Optional[HostStore] = None,
) -> tuple[HostStore, AggregationRunner]:
    store = store or HostStore()
    health = HealthMonitor(store)
    fetcher = SourceFetcher(
        store, health, fetch_config or FetchConfig(), transport=httpx.MockTransport(handler)
    )
    runner = AggregationRunner(
        store=store,
        fetcher=fetcher,
        merger=DedupMerger(store),
        writer=UnifiedFileWriter(store, OutputConfig(output_dir=Path(output_dir))),
        health=health,
        backoff=BackoffPolicy(ScheduleConfig(backoff_base_seconds=300)),
    )
    return store, runner


def add_source(store: HostStore, name: str) -> str:
    return store.add_source(name, f"{BASE_URL}/{name}.txt").id


def by_source(result) -> dict:
    return {c.source_id: c for c in result.sources}


@st.composite
def list_bodies_strategy(draw) -> list[list[str]]:
    """Generate 1-4 lists of domains drawn from a small shared pool."""
    pool = [f"host{i}.example.com" for i in range(10)]
    return draw(st.lists(
        st.lists(st.sampled_from(pool), min_size=0, max_size=12),
        min_size=1,
        max_size=4,
    ))


class TestPassMetricsProperty:
    """
    Property-based tests for aggregation result metrics.

    total = sum of per-source entries, unique = distinct keys,
    duplicates = total - unique, and the file lists every unique block domain.
    """

    @given(bodies=list_bodies_strategy())
    @settings(max_examples=30, deadline=None)
    def test_metrics_add_up(self, bodies: list[list[str]]) -> None:
        lists = {
            f"/list{i}.txt": "".join(f"0.0.0.0 {d}\n" for d in domains)
            for i, domains in enumerate(bodies)
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(ListServer(lists), tmpdir)
            for i in range(len(bodies)):
                add_source(store, f"list{i}")

            result = asyncio.run(runner.run())

            unique = {d for domains in bodies for d in domains}
            assert result.status == PassStatus.COMPLETED
            assert result.total_entries == sum(len(domains) for domains in bodies)
            assert result.unique_entries == len(unique)
            assert result.duplicates_removed == result.total_entries - result.unique_entries
            assert result.new_entries == len(unique)
            assert result.block_entries == len(unique)
            assert result.successful_sources == len(bodies)

            content = Path(result.file_path).read_text(encoding="utf-8")
            lines = [line for line in content.split("\n") if line and not line.startswith("#")]
            assert lines == [f"0.0.0.0 {d}" for d in sorted(unique)]

    @given(bodies=list_bodies_strategy())
    @settings(max_examples=20, deadline=None)
    def test_rerun_is_idempotent(self, bodies: list[list[str]]) -> None:
        lists = {
            f"/list{i}.txt": "".join(f"0.0.0.0 {d}\n" for d in domains)
            for i, domains in enumerate(bodies)
        }
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(ListServer(lists, use_etags=False), tmpdir)
            for i in range(len(bodies)):
                add_source(store, f"list{i}")

            async def two_passes():
                first = await runner.run()
                ids = {h.key: h.id for h in store.iter_hosts()}
                second = await runner.run()
                return first, ids, second

            first, ids, second = asyncio.run(two_passes())

            assert second.new_entries == 0
            assert second.unique_entries == first.unique_entries
            assert {h.key: h.id for h in store.iter_hosts()} == ids
            assert Path(first.file_path).read_bytes() == Path(second.file_path).read_bytes()


class TestAggregationRunnerScenarios:
    """Example-based tests for full passes."""

    def test_two_sources_sharing_a_domain(self) -> None:
        server = ListServer({
            "/a.txt": "0.0.0.0 ads.example.com\n0.0.0.0 tracker.example.com\n",
            "/b.txt": "ads.example.com\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            a = add_source(store, "a")
            b = add_source(store, "b")

            result = asyncio.run(runner.run())

            assert result.total_entries == 3
            assert result.unique_entries == 2
            assert result.duplicates_removed == 1
            assert result.new_entries == 2
            assert result.allow_entries == 0
            assert result.block_entries == 2
            assert store.find_host("ads.example.com", EntryType.BLOCK).occurrence_count == 2
            assert store.find_host("tracker.example.com", EntryType.BLOCK).occurrence_count == 1

            contributions = by_source(result)
            assert contributions[a].entries_contributed == 2
            assert contributions[b].entries_contributed == 1

            content = Path(result.file_path).read_text(encoding="utf-8")
            assert content.endswith("0.0.0.0 ads.example.com\n0.0.0.0 tracker.example.com\n")
            assert "# Sources: 2\n" in content
            assert result.file_size_bytes == len(content.encode("utf-8"))

    def test_failed_source_does_not_abort_pass(self) -> None:
        server = ListServer({
            "/good.txt": "0.0.0.0 ads.example.com\n",
            "/broken.txt": 500,
            "/slow.txt": TIMEOUT,
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            good = add_source(store, "good")
            broken = add_source(store, "broken")
            slow = add_source(store, "slow")

            result = asyncio.run(runner.run())

            assert result.status == PassStatus.COMPLETED
            assert result.successful_sources == 1
            assert result.failed_sources == 2
            contributions = by_source(result)
            assert contributions[good].fetch_status == FetchStatus.SUCCESS
            assert contributions[broken].fetch_status == FetchStatus.ERROR
            assert contributions[slow].fetch_status == FetchStatus.TIMEOUT
            assert store.get_source(broken).last_fetch_status == "ERROR"
            assert "ads.example.com" in Path(result.file_path).read_text(encoding="utf-8")

    def test_failed_source_keeps_previous_hosts(self) -> None:
        server = ListServer({
            "/a.txt": "0.0.0.0 from-a.example.com\n",
            "/b.txt": "0.0.0.0 from-b.example.com\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "a")
            add_source(store, "b")

            async def scenario():
                await runner.run()
                server.lists["/a.txt"] = 503
                return await runner.run()

            result = asyncio.run(scenario())

            assert store.find_host("from-a.example.com", EntryType.BLOCK) is not None
            assert "from-a.example.com" in Path(result.file_path).read_text(encoding="utf-8")

    def test_not_modified_reuses_cached_body(self) -> None:
        server = ListServer({
            "/a.txt": "0.0.0.0 ads.example.com\n0.0.0.0 tracker.example.com\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            a = add_source(store, "a")

            async def two_passes():
                return await runner.run(), await runner.run()

            first, second = asyncio.run(two_passes())

            assert by_source(second)[a].fetch_status == FetchStatus.NOT_MODIFIED
            assert second.successful_sources == 1
            assert second.unique_entries == 2
            assert second.new_entries == 0
            assert store.host_count() == 2
            latest_log = store.fetch_logs(a)[0]
            assert latest_log.status == FetchStatus.NOT_MODIFIED
            assert latest_log.content_changed is False
            assert "if-none-match" in server.requests[-1].headers
            assert Path(first.file_path).read_bytes() == Path(second.file_path).read_bytes()

    def test_disabled_host_stays_disabled_and_unexported(self) -> None:
        server = ListServer({
            "/a.txt": "0.0.0.0 ads.example.com\n0.0.0.0 tracker.example.com\n",
        }, use_etags=False)
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "a")

            async def scenario():
                await runner.run()
                host = store.find_host("ads.example.com", EntryType.BLOCK)
                store.set_host_enabled(host.id, False)
                return host.id, await runner.run()

            host_id, result = asyncio.run(scenario())

            host = store.find_host("ads.example.com", EntryType.BLOCK)
            assert host.id == host_id
            assert host.enabled is False
            content = Path(result.file_path).read_text(encoding="utf-8")
            assert "ads.example.com" not in content
            assert "0.0.0.0 tracker.example.com" in content

    def test_domain_dropped_from_list_is_removed(self) -> None:
        server = ListServer({
            "/a.txt": "0.0.0.0 ads.example.com\n0.0.0.0 tracker.example.com\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "a")

            async def scenario():
                await runner.run()
                server.lists["/a.txt"] = "0.0.0.0 ads.example.com\n"
                return await runner.run()

            result = asyncio.run(scenario())

            assert result.unique_entries == 1
            assert store.find_host("tracker.example.com", EntryType.BLOCK) is None

    def test_all_sources_failing_raises_and_records_result(self) -> None:
        server = ListServer({"/a.txt": 500, "/b.txt": TIMEOUT})
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "a")
            add_source(store, "b")

            try:
                asyncio.run(runner.run())
                assert False, "Should have raised AggregationFailedError"
            except AggregationFailedError as e:
                assert e.code == "aggregation_failed"
                result_id = e.details["result_id"]

            result = store.latest_result()
            assert result.id == result_id
            assert result.status == PassStatus.ERROR
            assert result.failed_sources == 2
            assert result.file_path is None
            assert list(Path(tmpdir).iterdir()) == []
            assert runner.progress.status == PassStatus.ERROR

    def test_no_enabled_sources_completes_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(ListServer({}), tmpdir)
            store.add_source("off", f"{BASE_URL}/off.txt", enabled=False)

            result = asyncio.run(runner.run())

            assert result.status == PassStatus.COMPLETED
            assert result.total_sources == 0
            assert result.unique_entries == 0
            assert "# Total domains: 0" in Path(result.file_path).read_text(encoding="utf-8")

    def test_rejected_and_malformed_lines_are_counted(self) -> None:
        server = ListServer({
            "/a.txt": (
                "0.0.0.0 ads.example.com\n"
                "0.0.0.0 bad!name.example.com\n"
                "this is not a hosts line\n"
                "0.0.0.0 Bücher.example\n"
            ),
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            a = add_source(store, "a")

            result = asyncio.run(runner.run())

            contribution = by_source(result)[a]
            assert contribution.rejected_tokens == 1
            assert contribution.malformed_lines == 1
            assert contribution.entries_contributed == 2
            idn = store.find_host("xn--bcher-kva.example", EntryType.BLOCK)
            assert idn.domain == "bücher.example"
            assert "0.0.0.0 xn--bcher-kva.example" in Path(result.file_path).read_text(encoding="utf-8")

    def test_allow_rule_overrides_block_from_other_source(self) -> None:
        server = ListServer({
            "/block.txt": "0.0.0.0 cdn.example.com\n0.0.0.0 ads.example.com\n",
            "/allow.txt": "@@||cdn.example.com^\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "block")
            add_source(store, "allow")

            result = asyncio.run(runner.run())

            assert result.allow_entries == 1
            assert result.block_entries == 2
            content = Path(result.file_path).read_text(encoding="utf-8")
            assert "0.0.0.0 cdn.example.com" not in content
            assert "# @@ cdn.example.com" in content

    def test_scheduled_pass_backs_off_failed_source(self) -> None:
        server = ListServer({
            "/good.txt": "0.0.0.0 ads.example.com\n",
            "/bad.txt": 500,
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            good = add_source(store, "good")
            bad = add_source(store, "bad")

            async def scenario():
                await runner.run(TriggeredBy.MANUAL)
                scheduled = await runner.run(TriggeredBy.SCHEDULED)
                manual = await runner.run(TriggeredBy.MANUAL)
                return scheduled, manual

            scheduled, manual = asyncio.run(scenario())

            assert by_source(scheduled)[bad].fetch_status == FetchStatus.SKIPPED
            assert by_source(scheduled)[good].fetch_status.is_success
            assert scheduled.failed_sources == 0
            assert scheduled.status == PassStatus.COMPLETED
            assert by_source(manual)[bad].fetch_status == FetchStatus.ERROR
            assert len(store.fetch_logs(bad)) == 2

    def test_second_trigger_is_rejected_while_running(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:

            async def scenario():
                gate = asyncio.Event()

                async def handler(request: httpx.Request) -> httpx.Response:
                    await gate.wait()
                    return httpx.Response(200, content=b"0.0.0.0 ads.example.com\n")

                store, runner = build_runner(handler, tmpdir)
                add_source(store, "a")

                task = asyncio.create_task(runner.run())
                await asyncio.sleep(0.05)
                assert runner.is_running
                assert runner.progress.status == PassStatus.RUNNING
                try:
                    await runner.run()
                    assert False, "Should have raised PassAlreadyRunningError"
                except PassAlreadyRunningError as e:
                    assert e.code == "pass_already_running"
                gate.set()
                result = await task
                return store, runner, result

            store, runner, result = asyncio.run(scenario())

            assert result.status == PassStatus.COMPLETED
            assert len(store.list_results()) == 1
            assert runner.is_running is False

    def test_cancel_stops_dispatching_new_fetches(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:

            async def scenario():
                gate = asyncio.Event()

                async def handler(request: httpx.Request) -> httpx.Response:
                    await gate.wait()
                    return httpx.Response(200, content=b"0.0.0.0 ads.example.com\n")

                store, runner = build_runner(handler, tmpdir, FetchConfig(max_concurrency=1))
                add_source(store, "a")
                add_source(store, "b")

                assert runner.cancel() is False
                task = asyncio.create_task(runner.run())
                await asyncio.sleep(0.05)
                assert runner.cancel() is True
                gate.set()
                return await task

            result = asyncio.run(scenario())

            statuses = sorted(c.fetch_status.value for c in result.sources)
            assert statuses == ["SKIPPED", "SUCCESS"]
            assert result.status == PassStatus.ERROR
            assert result.message == "cancelled"
            assert result.file_path is not None

    def test_refresh_subset_includes_disabled_source(self) -> None:
        server = ListServer({
            "/on.txt": "0.0.0.0 on.example.com\n",
            "/off.txt": "0.0.0.0 off.example.com\n",
        })
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "on")
            off = store.add_source("off", f"{BASE_URL}/off.txt", enabled=False).id

            result = asyncio.run(runner.run(source_ids=[off]))

            assert result.total_sources == 1
            assert store.find_host("off.example.com", EntryType.BLOCK) is not None
            assert store.find_host("on.example.com", EntryType.BLOCK) is None

    def test_progress_after_pass(self) -> None:
        server = ListServer({"/a.txt": "0.0.0.0 ads.example.com\n", "/b.txt": 500})
        with tempfile.TemporaryDirectory() as tmpdir:
            store, runner = build_runner(server, tmpdir)
            add_source(store, "a")
            add_source(store, "b")

            assert runner.progress.status == PassStatus.IDLE
            result = asyncio.run(runner.run())

            progress = runner.progress
            assert progress.status == PassStatus.COMPLETED
            assert progress.processed_sources == 2
            assert progress.total_sources == 2
            assert progress.result_id == result.id
            assert progress.finished_at is not None
            assert progress.triggered_by == TriggeredBy.MANUAL

    def test_failed_state_save_ends_pass_in_error(self) -> None:
        server = ListServer({"/a.txt": "0.0.0.0 ads.example.com\n"})
        with tempfile.TemporaryDirectory() as tmpdir:
            blocker = Path(tmpdir) / "blocker"
            blocker.write_text("not a directory", encoding="utf-8")
            store = HostStore(file_path=blocker / "state.json")
            store, runner = build_runner(server, str(Path(tmpdir) / "out"), store=store)
            add_source(store, "a")

            try:
                asyncio.run(runner.run())
                assert False, "Should have raised PersistenceError"
            except PersistenceError as e:
                assert e.code == "io_error"

            progress = runner.progress
            assert not runner.is_running
            assert progress.status == PassStatus.ERROR
            assert progress.finished_at is not None
            assert "Failed to write state file" in progress.message
