"""
Single-pass expense extraction.

Image-bearing bookkeeping requests skip the plan / reflect cycle: one model call reads the text and
the receipts, the records it returns are validated as ``create_expense`` and persisted straight
through the executor.  Uploading the receipt is the user's confirmation.
"""

import datetime
import logging
from typing import (
    Any,
    Dict,
    List,
)

from lifedesk.actions import ActionName
from lifedesk.actions.validator import validate
from lifedesk.agent import prompts
from lifedesk.agent.action_executor import ActionExecutor
from lifedesk.agent.model_client import BaseModelClient
from lifedesk.agent.multimodal import NormalizedInput
from lifedesk.agent.response_parser import (
    ExpenseOutput,
    parse_expenses,
)
from lifedesk.core.errors import (
    ActionExecutionError,
    ModelCallError,
    ModelFormatError,
    ModelUnavailableError,
)
from lifedesk.core.schema import (
    ExpenseResponse,
    Message,
    Role,
)
from lifedesk.memory.thread_store import ThreadStore
from lifedesk.memory.turn_log import TurnLog

logger = logging.getLogger(__name__)

EXPENSE_THREAD_ID = "expense-user-default"


class ExpenseAgent:
    """Extract expenses from a message (and receipts) and record them."""

    def __init__(
        self,
        model: BaseModelClient,
        executor: ActionExecutor,
        store: ThreadStore,
        turn_log: TurnLog | None = None,
        default_currency: str = "EUR",
    ):
        self.model = model
        self.executor = executor
        self.store = store
        self.turn_log = turn_log
        self.default_currency = default_currency

    async def run(
        self,
        user_input: NormalizedInput,
        thread_id: str = EXPENSE_THREAD_ID,
        today: datetime.date | None = None,
    ) -> ExpenseResponse:
        """
        Handle one expense message.

        Raises
        ------
        ModelUnavailableError
            If the model service cannot be reached at all.
        """
        today = today or datetime.date.today()
        async with self.store.lock(thread_id):
            self.store.append(
                thread_id,
                Message(
                    role=Role.USER, text=user_input.text, attachments=tuple(user_input.images)
                ),
            )
            try:
                reply, records = await self._run(user_input, today)
            except ModelUnavailableError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Expense agent failed: %s", exc)
                reply, records = "Sorry, I couldn't process that expense. Please try again.", []

            self.store.append(thread_id, Message(role=Role.AGENT, text=reply))
            response = ExpenseResponse(
                reply=reply,
                has_images=user_input.has_images,
                image_count=len(user_input.images),
                records=records,
            )
            if self.turn_log is not None:
                await self.turn_log.record(
                    thread_id, user_input.text, response.model_dump(mode="json", by_alias=True)
                )
            return response

    async def _run(
        self, user_input: NormalizedInput, today: datetime.date
    ) -> tuple[str, List[Dict[str, Any]]]:
        system = prompts.build_expense_system(today, self.default_currency)
        request = user_input.text
        if user_input.images:
            request += f"\n\n({len(user_input.images)} image(s) attached)"

        try:
            raw = await self.model.complete(
                system, [{"role": "user", "content": request}], user_input.images
            )
        except ModelCallError as exc:
            logger.warning("Expense extraction call failed: %s", exc)
            reply = "I couldn't read that right now because the model did not respond. Try again."
            return reply, []

        try:
            output = parse_expenses(raw)
        except ModelFormatError as first:
            logger.info("Expense output not parseable (%s); asking once to reformat", first)
            try:
                raw = await self.model.complete(
                    system, prompts.reformat_messages(request, raw), user_input.images
                )
                output = parse_expenses(raw)
            except (ModelFormatError, ModelCallError) as second:
                logger.warning("Replying without recording expenses: %s", second)
                return raw.strip() or "I couldn't extract any expense from that.", []

        return await self._record(output, today)

    async def _record(
        self, output: ExpenseOutput, today: datetime.date
    ) -> tuple[str, List[Dict[str, Any]]]:
        recorded: List[Dict[str, Any]] = []
        problems: List[str] = []

        for index, record in enumerate(output.expenses, start=1):
            given = {key: value for key, value in record.items() if value is not None}
            fields = {"date": today.isoformat(), "currency": self.default_currency, **given}
            validation = validate(ActionName.CREATE_EXPENSE, fields)
            if not validation.ok or validation.params is None:
                problems.append(f"expense {index}: {validation.error_message()}")
                continue
            try:
                result = await self.executor.execute(ActionName.CREATE_EXPENSE, validation.params)
            except ActionExecutionError as exc:
                problems.append(f"expense {index}: {exc}")
                continue
            recorded.append({**validation.params.to_backend(), **result.data})

        lines = [output.reply.strip()] if output.reply.strip() else []
        if recorded:
            lines.append(f"Recorded {len(recorded)} expense(s).")
        if problems:
            lines.append("Could not record: " + "; ".join(problems))
        if not lines:
            lines.append("I couldn't find any expense to record.")
        logger.info("Expense pass recorded %d, rejected %d", len(recorded), len(problems))
        return "\n".join(lines), recorded
