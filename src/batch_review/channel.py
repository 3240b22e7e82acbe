"""Typed channel between the core and a presentation layer.

Commands come in as messages discriminated on ``type``; state leaves as
CoreSnapshot objects. The channel is transport-agnostic: a webview bridge,
a websocket or a test can drive it.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from batch_review.automation import ServerStartError
from batch_review.backend.base import BackendError
from batch_review.gateway import ConfirmationRequiredError
from batch_review.models import CoreSnapshot, QueueName, Severity, SubmissionAction
from batch_review.selection import SelectionEvent
from batch_review.state import InvalidTransitionError

if TYPE_CHECKING:
    from batch_review.core import ReviewCore

logger = logging.getLogger(__name__)


class RefreshCommand(BaseModel):
    type: Literal["refresh"] = "refresh"


class AddToBatchCommand(BaseModel):
    type: Literal["addToBatch"] = "addToBatch"
    change_ids: list[str]
    severities: dict[str, Severity] = Field(default_factory=dict)
    insert_at: int | None = None


class RemoveFromBatchCommand(BaseModel):
    type: Literal["removeFromBatch"] = "removeFromBatch"
    change_ids: list[str]
    insert_at: int | None = None


class ClearBatchCommand(BaseModel):
    type: Literal["clearBatch"] = "clearBatch"


class ReorderCommand(BaseModel):
    type: Literal["reorder"] = "reorder"
    change_ids: list[str]
    target: QueueName
    drop_index: int


class SelectCommand(BaseModel):
    type: Literal["selectEvent"] = "selectEvent"
    queue: QueueName
    event: SelectionEvent


class LoadFilesCommand(BaseModel):
    type: Literal["loadFiles"] = "loadFiles"
    rest_id: str


class StartServerCommand(BaseModel):
    type: Literal["startServer"] = "startServer"


class StopServerCommand(BaseModel):
    type: Literal["stopServer"] = "stopServer"


class ArmCommand(BaseModel):
    """First half of a confirmed action: a human armed the control."""

    type: Literal["arm"] = "arm"
    action: SubmissionAction


class VoteCommand(BaseModel):
    type: Literal["vote"] = "vote"
    confirmation: str
    labels: dict[str, int]
    message: str | None = None
    reviewers: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    resolved: bool | None = None


class ApproveAllCommand(BaseModel):
    type: Literal["approveAll"] = "approveAll"
    confirmation: str


class SubmitAllCommand(BaseModel):
    type: Literal["submitAll"] = "submitAll"
    confirmation: str


class ApproveAndSubmitCommand(BaseModel):
    type: Literal["approveAndSubmit"] = "approveAndSubmit"
    confirmation: str


class SuggestPeopleCommand(BaseModel):
    type: Literal["suggestPeople"] = "suggestPeople"
    query: str
    cc: bool = False


Command = Annotated[
    Union[
        RefreshCommand,
        AddToBatchCommand,
        RemoveFromBatchCommand,
        ClearBatchCommand,
        ReorderCommand,
        SelectCommand,
        LoadFilesCommand,
        StartServerCommand,
        StopServerCommand,
        ArmCommand,
        VoteCommand,
        ApproveAllCommand,
        SubmitAllCommand,
        ApproveAndSubmitCommand,
        SuggestPeopleCommand,
    ],
    Field(discriminator="type"),
]

_command_adapter: TypeAdapter[Any] = TypeAdapter(Command)


class Reply(BaseModel):
    type: str
    ok: bool = True
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


def parse_command(raw: dict[str, Any]) -> BaseModel:
    """Validate a raw message into a command model."""
    return _command_adapter.validate_python(raw)


class CoreChannel:
    """Dispatches inbound commands to a ReviewCore and streams its snapshots out."""

    def __init__(self, core: ReviewCore) -> None:
        self.core = core
        self._handlers: dict[str, Callable[[Any], Awaitable[dict[str, Any]]]] = {
            "refresh": self._refresh,
            "addToBatch": self._add,
            "removeFromBatch": self._remove,
            "clearBatch": self._clear,
            "reorder": self._reorder,
            "selectEvent": self._select,
            "loadFiles": self._load_files,
            "startServer": self._start_server,
            "stopServer": self._stop_server,
            "arm": self._arm,
            "vote": self._vote,
            "approveAll": self._approve_all,
            "submitAll": self._submit_all,
            "approveAndSubmit": self._approve_and_submit,
            "suggestPeople": self._suggest_people,
        }

    async def send(self, command: BaseModel | dict[str, Any]) -> Reply:
        if isinstance(command, dict):
            try:
                command = parse_command(command)
            except ValidationError as e:
                return Reply(type=str(command.get("type", "")), ok=False, error=str(e))
        kind = getattr(command, "type", "")
        handler = self._handlers.get(kind)
        if handler is None:
            return Reply(type=kind, ok=False, error=f"unsupported command: {kind}")
        try:
            data = await handler(command)
        except (ConfirmationRequiredError, ServerStartError, InvalidTransitionError, BackendError, ValueError) as e:
            logger.warning("Command %s failed: %s", kind, e)
            return Reply(type=kind, ok=False, error=str(e))
        return Reply(type=kind, data=data)

    async def subscribe(self) -> AsyncIterator[CoreSnapshot]:
        async for event in self.core.broker.subscribe():
            if event.event == "state":
                yield CoreSnapshot.model_validate(event.data)

    # --- Handlers ---

    async def _refresh(self, cmd: RefreshCommand) -> dict[str, Any]:
        return {"refreshed": await self.core.refresh()}

    async def _add(self, cmd: AddToBatchCommand) -> dict[str, Any]:
        added = await self.core.add_to_batch(cmd.change_ids, cmd.severities, cmd.insert_at)
        return {"added": [item.rest_id for item in added]}

    async def _remove(self, cmd: RemoveFromBatchCommand) -> dict[str, Any]:
        removed = await self.core.remove_from_batch(cmd.change_ids, cmd.insert_at)
        return {"removed": [item.rest_id for item in removed]}

    async def _clear(self, cmd: ClearBatchCommand) -> dict[str, Any]:
        cleared = await self.core.clear_batch()
        return {"cleared": [item.rest_id for item in cleared]}

    async def _reorder(self, cmd: ReorderCommand) -> dict[str, Any]:
        await self.core.reorder(cmd.change_ids, cmd.target, cmd.drop_index)
        return {}

    async def _select(self, cmd: SelectCommand) -> dict[str, Any]:
        state = await self.core.select(cmd.queue, cmd.event)
        return state.model_dump(mode="json")

    async def _load_files(self, cmd: LoadFilesCommand) -> dict[str, Any]:
        files = await self.core.load_files(cmd.rest_id)
        return {"files": [f.model_dump(mode="json") for f in files]}

    async def _start_server(self, cmd: StartServerCommand) -> dict[str, Any]:
        return {"port": await self.core.start_server()}

    async def _stop_server(self, cmd: StopServerCommand) -> dict[str, Any]:
        await self.core.stop_server()
        return {}

    async def _arm(self, cmd: ArmCommand) -> dict[str, Any]:
        return {"action": cmd.action.value, "confirmation": self.core.arm(cmd.action)}

    async def _vote(self, cmd: VoteCommand) -> dict[str, Any]:
        report = await self.core.vote(
            cmd.confirmation, cmd.labels,
            message=cmd.message, reviewers=cmd.reviewers, cc=cmd.cc, resolved=cmd.resolved,
        )
        return report.model_dump(mode="json")

    async def _approve_all(self, cmd: ApproveAllCommand) -> dict[str, Any]:
        return (await self.core.approve_all(cmd.confirmation)).model_dump(mode="json")

    async def _submit_all(self, cmd: SubmitAllCommand) -> dict[str, Any]:
        return (await self.core.submit_all(cmd.confirmation)).model_dump(mode="json")

    async def _approve_and_submit(self, cmd: ApproveAndSubmitCommand) -> dict[str, Any]:
        return (await self.core.approve_and_submit(cmd.confirmation)).model_dump(mode="json")

    async def _suggest_people(self, cmd: SuggestPeopleCommand) -> dict[str, Any]:
        people = await self.core.suggest_people(cmd.query, cc=cmd.cc)
        return {"cc": cmd.cc, "people": [p.model_dump(mode="json") for p in people]}
