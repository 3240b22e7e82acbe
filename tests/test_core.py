"""Tests for the orchestration core."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from conftest import FakeBackend, make_item

from batch_review.automation import ServerStartError
from batch_review.config import AutomationSettings, Settings
from batch_review.core import ReviewCore
from batch_review.gateway import ConfirmationRequiredError
from batch_review.models import (
    FileInfo,
    LabelInfo,
    LabelValue,
    Person,
    QueueName,
    ServerState,
    Severity,
    SubmissionAction,
    SubmitRequirements,
)
from batch_review.selection import SelectAction, SelectionEvent


@pytest.fixture
def settings() -> Settings:
    return Settings(automation=AutomationSettings(port=0))


@pytest.fixture
async def core(backend, settings):
    core = ReviewCore(backend, settings)
    await core.refresh()
    yield core
    await core.close()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_fills_incoming(self, core, backend):
        assert core.store.ids(QueueName.INCOMING) == ["A", "B", "C", "D", "E"]
        assert ("list_assigned_changes", core.settings.backend.incoming_query) in backend.calls
        assert core.loading is False

    @pytest.mark.asyncio
    async def test_refresh_keeps_batch_members_out(self, core):
        await core.add_to_batch(["A"])
        await core.refresh()
        assert core.store.ids(QueueName.INCOMING) == ["B", "C", "D", "E"]
        assert core.store.ids(QueueName.BATCH) == ["A"]

    @pytest.mark.asyncio
    async def test_refresh_failure(self, core, backend):
        backend.failing.add("list_assigned_changes")
        assert await core.refresh() is False
        assert core.loading is False
        assert len(core.store.incoming) == 5
        assert core.broker.latest("state").data["loading"] is False


class TestBatchOperations:
    @pytest.mark.asyncio
    async def test_add_to_empty_batch_with_severity(self, core):
        await core.add_to_batch(["A", "B"], {"A": Severity.CRITICAL})
        batch = core.store.batch
        assert [i.rest_id for i in batch] == ["A", "B"]
        assert batch[0].severity == Severity.CRITICAL
        assert "A" not in core.store.ids(QueueName.INCOMING)
        assert "B" not in core.store.ids(QueueName.INCOMING)

    @pytest.mark.asyncio
    async def test_chain_added_tip_first_is_reordered(self):
        base, tip = make_item("A", 1), make_item("B", 2)
        backend = FakeBackend([base, tip])
        backend.add_chain([base, tip])
        core = ReviewCore(backend, Settings(automation=AutomationSettings(port=0)))
        try:
            await core.refresh()
            await core.add_to_batch(["B", "A"])
            assert core.store.ids(QueueName.BATCH) == ["A", "B"]
        finally:
            await core.close()

    @pytest.mark.asyncio
    async def test_later_add_reorders_in_background(self, core):
        await core.add_to_batch(["A"], {"A": Severity.LOW})
        await core.add_to_batch(["B"], {"B": Severity.HIGH})
        await core.organizer.drain()
        assert core.store.ids(QueueName.BATCH) == ["B", "A"]

    @pytest.mark.asyncio
    async def test_manual_reorder_sticks(self, core):
        await core.add_to_batch(["A", "B"], {"A": Severity.HIGH})
        await core.reorder(["B"], QueueName.BATCH, 0)
        await core.organizer.drain()
        assert core.store.ids(QueueName.BATCH) == ["B", "A"]

    @pytest.mark.asyncio
    async def test_remove_and_clear(self, core):
        await core.add_to_batch(["A", "B", "C"])
        await core.remove_from_batch(["B"], insert_at=0)
        assert core.store.ids(QueueName.INCOMING)[0] == "B"
        await core.clear_batch()
        assert core.store.batch == []
        assert sorted(core.store.ids(QueueName.INCOMING)) == ["A", "B", "C", "D", "E"]

    @pytest.mark.asyncio
    async def test_load_files(self, core, backend):
        backend.files["A"] = [FileInfo(path="src/app.py", lines_inserted=3)]
        files = await core.load_files("A")
        assert [f.path for f in files] == ["src/app.py"]
        item = core.store.find("A")[1]
        assert item.files_loaded is True
        assert item.files[0].lines_inserted == 3

    @pytest.mark.asyncio
    async def test_load_files_failure_is_empty(self, core, backend):
        backend.failing.add("file_list")
        assert await core.load_files("A") == []
        assert core.store.find("A")[1].files_loaded is True

    @pytest.mark.asyncio
    async def test_load_files_unknown_change(self, core):
        assert await core.load_files("Z") == []


class TestSelection:
    @pytest.mark.asyncio
    async def test_range_select(self, core):
        await core.select(QueueName.INCOMING, SelectionEvent(action=SelectAction.TOGGLE, rest_id="B"))
        state = await core.select(QueueName.INCOMING, SelectionEvent(action=SelectAction.RANGE, rest_id="D"))
        assert state.selected == ["B", "C", "D"]
        assert core.selected(QueueName.INCOMING) == ["B", "C", "D"]

    @pytest.mark.asyncio
    async def test_selection_pruned_when_items_move(self, core):
        await core.select(QueueName.INCOMING, SelectionEvent(action=SelectAction.TOGGLE, rest_id="B"))
        await core.add_to_batch(["B"])
        assert core.selected(QueueName.INCOMING) == []
        assert core.selections[QueueName.INCOMING].anchor is None

    @pytest.mark.asyncio
    async def test_chain_select(self):
        chain = [make_item("P", 1), make_item("Q", 2)]
        backend = FakeBackend([*chain, make_item("S", 3)])
        backend.add_chain(chain)
        core = ReviewCore(backend, Settings(automation=AutomationSettings(port=0)))
        try:
            await core.refresh()
            state = await core.select(QueueName.INCOMING, SelectionEvent(action=SelectAction.CHAIN, rest_id="Q"))
            assert state.selected == ["P", "Q"]
        finally:
            await core.close()


class TestSubmission:
    @pytest.mark.asyncio
    async def test_vote_requires_arming(self, core):
        await core.add_to_batch(["A"])
        with pytest.raises(ConfirmationRequiredError):
            await core.vote(None, {"Code-Review": 1})
        assert core.store.ids(QueueName.BATCH) == ["A"]

    @pytest.mark.asyncio
    async def test_vote_clears_batch(self, core, backend):
        await core.add_to_batch(["A", "B"])
        report = await core.vote(core.arm(SubmissionAction.VOTE), {"Code-Review": 1}, message="ok")
        assert report.success_count == 2
        assert core.store.batch == []
        assert [v[0] for v in backend.votes] == ["A", "B"]

    @pytest.mark.asyncio
    async def test_submit_all_scenario(self, core, backend):
        await core.add_to_batch(["A", "B"])
        backend.requirements["B"] = SubmitRequirements(submittable=False, unmet=["Verified"])
        report = await core.submit_all(core.arm(SubmissionAction.SUBMIT))
        assert backend.submitted == ["A"]
        assert core.store.ids(QueueName.BATCH) == ["B"]
        assert core.store.batch[0].skip_reason == "Verified"
        assert report.skipped_count == 1
        assert core.broker.latest("state").data["batch"][0]["skip_reason"] == "Verified"

    @pytest.mark.asyncio
    async def test_approve_all(self, core, backend):
        await core.add_to_batch(["C"])
        report = await core.approve_all(core.arm(SubmissionAction.APPROVE))
        assert report.success_count == 1
        assert core.store.batch[0].has_approving_vote is True

    @pytest.mark.asyncio
    async def test_approve_and_submit(self, core, backend):
        await core.add_to_batch(["A", "B"])
        backend.requirements["B"] = SubmitRequirements(submittable=False, unmet=["Verified"])
        with pytest.raises(ConfirmationRequiredError):
            await core.approve_and_submit(core.arm(SubmissionAction.APPROVE))
        report = await core.approve_and_submit(core.arm(SubmissionAction.APPROVE_AND_SUBMIT))
        assert [(v[0], v[2]) for v in backend.votes] == [("A", {"Code-Review": 2}), ("B", {"Code-Review": 2})]
        assert backend.submitted == ["A"]
        assert report.success_count == 1
        assert report.skipped_count == 1
        assert core.store.ids(QueueName.BATCH) == ["B"]
        assert core.store.batch[0].has_approving_vote is True

    @pytest.mark.asyncio
    async def test_unconfirmed_vote_touches_no_backend(self, core, backend):
        await core.add_to_batch(["A", "B"])
        await core.organizer.drain()
        before = len(backend.calls)
        core.resolver.cache.clear()
        with pytest.raises(ConfirmationRequiredError):
            await core.vote("bogus", {"Code-Review": 1})
        assert len(backend.calls) == before

    @pytest.mark.asyncio
    async def test_confirmation_outlives_slow_ordering(self, items):
        class SlowChains(FakeBackend):
            async def related_chain(self, change_id):
                await asyncio.sleep(0.1)
                return await super().related_chain(change_id)

        backend = SlowChains(items)
        settings = Settings(automation=AutomationSettings(port=0))
        settings.submission.confirmation_ttl_seconds = 0.05
        core = ReviewCore(backend, settings)
        try:
            await core.refresh()
            # Straight into the store, so nothing is resolved or cached yet.
            core.store.add_to_batch(["A", "B"])
            report = await core.vote(core.arm(SubmissionAction.VOTE), {"Code-Review": 1})
            assert report.success_count == 2
        finally:
            await core.close()

    @pytest.mark.asyncio
    async def test_change_added_during_vote_stays(self, items):
        class SlowVotes(FakeBackend):
            async def post_vote(self, rest_id, revision_id, labels, **kwargs):
                await asyncio.sleep(0.05)
                return await super().post_vote(rest_id, revision_id, labels, **kwargs)

        backend = SlowVotes(items)
        core = ReviewCore(backend, Settings(automation=AutomationSettings(port=0)))
        try:
            await core.refresh()
            await core.add_to_batch(["A", "B"])
            voting = asyncio.create_task(core.vote(core.arm(SubmissionAction.VOTE), {"Code-Review": 1}))
            await asyncio.sleep(0.02)
            await core.add_to_batch(["C"])
            report = await voting
            await core.organizer.drain()
            assert report.success_count == 2
            assert [v[0] for v in backend.votes] == ["A", "B"]
            assert core.store.ids(QueueName.BATCH) == ["C"]
        finally:
            await core.close()


class TestVoteControls:
    @pytest.mark.asyncio
    async def test_default_labels(self, core):
        names = [label.name for label in core.snapshot().labels]
        assert names == ["Code-Review"]
        assert [v.score for v in core.snapshot().labels[0].values] == ["-2", "-1", "0", "+1", "+2"]

    @pytest.mark.asyncio
    async def test_labels_fetched_on_first_add(self, core, backend):
        backend.label_info["A"] = [LabelInfo(name="Verified", values=[LabelValue(score="+1", description="Works")])]
        await core.add_to_batch(["A"])
        await core.add_to_batch(["B"])
        assert [label.name for label in core.snapshot().labels] == ["Verified"]
        assert core.broker.latest("state").data["labels"][0]["name"] == "Verified"
        assert backend.calls.count(("labels", "A")) == 1
        assert ("labels", "B") not in backend.calls

    @pytest.mark.asyncio
    async def test_labels_failure_keeps_defaults_and_retries(self, core, backend):
        await core.add_to_batch(["A"])
        assert core.labels[0].name == "Code-Review"
        await core.clear_batch()
        backend.label_info["B"] = [LabelInfo(name="Verified")]
        await core.add_to_batch(["B"])
        assert core.labels[0].name == "Verified"

    @pytest.mark.asyncio
    async def test_suggest_people(self, core, backend):
        backend.people = [
            Person(id="7", name="Ann Smith", short_name="ann"),
            Person(id="g1", name="Annotators", is_group=True),
            Person(id="8", name="Bob"),
        ]
        assert await core.suggest_people("ann") == []
        assert not any(call[0] == "suggest_people" for call in backend.calls)

        await core.add_to_batch(["C"])
        assert [p.id for p in await core.suggest_people("ann")] == ["7"]
        assert [p.id for p in await core.suggest_people("ann", cc=True)] == ["7", "g1"]
        assert ("suggest_people", "C") in backend.calls

    @pytest.mark.asyncio
    async def test_suggest_people_failure_is_empty(self, core, backend):
        await core.add_to_batch(["A"])
        backend.failing.add("suggest_people")
        assert await core.suggest_people("a") == []


class TestAutomationWiring:
    @pytest.mark.asyncio
    async def test_automation_add_goes_through_core(self, core):
        transport = ASGITransport(app=core.automation.app)
        async with AsyncClient(transport=transport, base_url="http://127.0.0.1") as c:
            resp = await c.post("/batch", json={"changeIDs": ["B", "A"], "scores": {"A": "critical"}})
            assert resp.status_code == 200
            await c.delete("/batch")
            assert (await c.get("/batch")).json() == {"batch": []}
        incoming = core.store.ids(QueueName.INCOMING)
        assert sorted(incoming) == ["A", "B", "C", "D", "E"]

    @pytest.mark.asyncio
    async def test_start_and_stop_server_updates_snapshot(self, core):
        port = await core.start_server()
        assert core.snapshot().server.port == port
        assert core.snapshot().server.state == ServerState.RUNNING
        await core.stop_server()
        assert core.snapshot().server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_start_failure_reported(self, backend):
        core = ReviewCore(backend, Settings(automation=AutomationSettings(port=0)))
        first = await core.start_server()
        other = ReviewCore(backend, Settings(automation=AutomationSettings(port=first)))
        try:
            with pytest.raises(ServerStartError):
                await other.start_server()
            assert other.snapshot().server.state == ServerState.STOPPED
        finally:
            await core.close()
            await other.close()


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_mutations_publish_state(self, core):
        seen = []

        async def watch():
            async for event in core.broker.subscribe(replay=False):
                seen.append(event.data)
                if len(seen) == 1:
                    break

        task = asyncio.create_task(watch())
        await asyncio.sleep(0)
        await core.add_to_batch(["E"])
        await asyncio.wait_for(task, timeout=2)
        assert [i["rest_id"] for i in seen[0]["batch"]] == ["E"]

    @pytest.mark.asyncio
    async def test_close_releases_backend(self, backend, settings):
        core = ReviewCore(backend, settings)
        await core.close()
        assert backend.closed is True
