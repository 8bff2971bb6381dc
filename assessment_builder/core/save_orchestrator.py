"""
Save Orchestrator - multi-step persistence workflows

Workflows (each returns a WorkflowResult):
- save question:  library check (question) -> library check queue
                  (new answers, one at a time) -> persist question ->
                  attach answers -> bundle publication (background)
- save section:   parent first when the parent is new, then the section
- move question:  create in target -> attach answers -> delete source
- delete:         one delete call, removal on success, then saved
                  siblings that moved up get their new sort_order
- reorder:        concurrent sort_order updates, then a full reload

Rules:
- A workflow stops at the first failing step and reports that stage.
  Completed steps are never undone, so a move that fails while deleting
  the source leaves the question in both sections, and one that fails
  while attaching answers leaves an answerless copy in the target.
- Library check failures are not failures: the entity is created as new
  content.
- Canonical ids are read from the session right before each request.
- Every outcome reaches the author as a message; errors never escape.
"""

import asyncio
import logging
from typing import Any, List, Optional, Tuple

from assessment_builder.commands import (
    ChildrenPersisted,
    EntityPersisted,
    EntityRemoved,
    FieldsPersisted,
    LibraryBound,
    MessagePosted,
    QuestionCopiedToSection,
    SaveFinished,
)
from assessment_builder.contracts import Answer, Question, Section
from assessment_builder.core.change_tracker import ChangeAction
from assessment_builder.core.payloads import (
    ANSWER_API_FIELDS,
    QUESTION_API_FIELDS,
    SECTION_API_FIELDS,
    answer_payload,
    library_question_payload,
    question_payload,
    section_payload,
    update_payload,
)
from assessment_builder.errors import BackendRejection, BuilderError, LibraryCheckFailure
from assessment_builder.results import (
    PersistDelete,
    PersistReorder,
    SaveStage,
    StartMove,
    StartSave,
    WorkflowResult,
)
from assessment_builder.utils.helpers import extract_id
from assessment_builder.utils.message_log import Severity

logger = logging.getLogger(__name__)


def answer_ids(body: Any) -> List[Optional[str]]:
    """
    Answer ids from an add-answers response, in request order.

    Accepts {'ids': [...]}, {'answers': [...]} or a bare list; entries may
    be ids or records.
    """
    if isinstance(body, dict):
        entries = body.get('ids') or body.get('answers') or []
    elif isinstance(body, list):
        entries = body
    else:
        entries = []
    ids = []
    for entry in entries:
        if isinstance(entry, dict):
            ids.append(extract_id(entry))
        elif entry not in (None, ''):
            ids.append(str(entry))
        else:
            ids.append(None)
    return ids


def _require_id(body: Any, what: str) -> str:
    canonical_id = extract_id(body)
    if canonical_id is None:
        raise BackendRejection(f"No id returned for new {what}", body=body)
    return canonical_id


class _WorkflowRun:
    """Stage bookkeeping for one workflow"""

    def __init__(self, ref: int, in_flight: Tuple[int, ...]):
        self.ref = ref
        self.in_flight = in_flight
        self.stage = SaveStage.IDLE
        self.completed: List[SaveStage] = []

    def advance(self, stage: SaveStage) -> None:
        if self.stage not in (SaveStage.IDLE, stage) and self.stage not in self.completed:
            self.completed.append(self.stage)
        self.stage = stage

    def result(self, ok: bool, canonical_id: Optional[str], message: str) -> WorkflowResult:
        if ok:
            self.advance(SaveStage.DONE)
        return WorkflowResult(
            ok=ok,
            stage=self.stage,
            ref=self.ref,
            canonical_id=canonical_id,
            message=message,
            completed_stages=tuple(self.completed),
        )


class SaveOrchestrator:
    """Runs save, move, delete and reorder effects for an EditSession"""

    def __init__(self, session):
        """
        Args:
            session: EditSession (api, matcher, tree(), tracker(), feed(),
                     post(), spawn(), reload helpers)
        """
        self.session = session

    # ========================
    # Outcome Helpers
    # ========================

    async def _succeed(self, run: _WorkflowRun, canonical_id: Optional[str], message: str) -> WorkflowResult:
        await self.session.feed(MessagePosted(Severity.SUCCESS.value, message))
        await self.session.feed(SaveFinished(run.in_flight, True))
        logger.info(f"Workflow for {run.ref} done: {message}")
        return run.result(True, canonical_id, message)

    async def _fail(self, run: _WorkflowRun, error: BuilderError, prefix: str = "") -> WorkflowResult:
        stage = run.stage.value.replace('_', ' ')
        message = f"{prefix}{stage.capitalize()} failed: {error}"
        await self.session.feed(MessagePosted(Severity.ERROR.value, message, run.stage.value))
        await self.session.feed(SaveFinished(run.in_flight, False))
        logger.error(f"Workflow for {run.ref} failed at {run.stage.value}: {error}")
        return run.result(False, self.session.tree().canonical_id(run.ref), message)

    # ========================
    # Save
    # ========================

    async def save(self, effect: StartSave) -> WorkflowResult:
        entity = self.session.tree().find(effect.ref)
        if isinstance(entity, Question):
            return await self._save_question(effect.ref)
        if isinstance(entity, Section):
            return await self._save_section(effect.ref, entity)
        run = _WorkflowRun(effect.ref, (effect.ref,))
        await self.session.feed(SaveFinished(run.in_flight, False))
        return run.result(False, None, f"Nothing to save for {effect.ref}")

    async def _save_question(self, ref: int) -> WorkflowResult:
        session = self.session
        run = _WorkflowRun(ref, (ref,))
        run.advance(SaveStage.VALIDATING)
        was_persisted = session.tree().is_persisted(ref)
        created = False
        replaced = False

        try:
            await self._check_library(run, ref)

            run.advance(SaveStage.PERSISTING)
            tree = session.tree()
            question = tree.get(ref)
            entry = session.tracker().get(ref)
            if not was_persisted:
                section_id = tree.canonical_id(question.section_ref)
                payload = (library_question_payload(question) if question.library_id
                           else question_payload(question))
                body = await session.api.add_question_to_section(section_id, payload)
                await session.feed(EntityPersisted(ref, _require_id(body, "question")))
                created = True
            elif entry is not None and entry.action == ChangeAction.LIBRARY_REPLACE:
                await self._replace_with_library(run, ref)
                replaced = True
            elif entry is not None and entry.action == ChangeAction.UPDATE:
                payload = update_payload(entry.fields, QUESTION_API_FIELDS)
                if payload:
                    await session.api.update_question(tree.canonical_id(ref), payload)
                await session.feed(FieldsPersisted(ref, tuple(entry.fields)))

            question = session.tree().get(ref)
            if question.library_id and (created or replaced):
                # library questions arrive with their own answers
                tree = session.tree()
                for answer in tree.child_entities(ref):
                    if not tree.is_persisted(answer.ref):
                        await session.feed(EntityRemoved(answer.ref))
                await session.reload_section(question.section_ref)
            else:
                run.advance(SaveStage.ATTACHING_CHILDREN)
                await self._persist_answers(run, ref)
        except BuilderError as e:
            return await self._fail(run, e)

        tree = session.tree()
        question = tree.get(ref)
        question_id = tree.canonical_id(ref)
        if created and not question.library_id and question.question_type.is_select:
            session.spawn(self._publish_bundle(question_id), name=f"bundle-{question_id}")
        return await self._succeed(run, question_id, f"Question '{question.label.strip()}' saved")

    async def _check_library(self, run: _WorkflowRun, ref: int) -> None:
        """Pre-save library checks for a new question and its new answers."""
        session = self.session
        tree = session.tree()
        question = tree.get(ref)

        if not tree.is_persisted(ref) and not question.library_id:
            run.advance(SaveStage.LIBRARY_CHECKING)
            try:
                match = await session.matcher.find_exact(question.label, 'question')
            except LibraryCheckFailure as e:
                logger.warning(f"{e}; saving question as new content")
                match = None
            if match is not None:
                await session.feed(LibraryBound(ref, match.library_id, match.label))
                return

        tree = session.tree()
        question = tree.get(ref)
        if question.library_id or not question.question_type.is_select:
            return
        pending = [
            a for a in tree.child_entities(ref)
            if not a.is_deleted and not tree.is_persisted(a.ref) and not a.library_id
        ]
        if not pending:
            return
        run.advance(SaveStage.LIBRARY_CHECKING)
        matches = await session.matcher.check_queue([(a.ref, a.label) for a in pending], 'answer')
        for answer_ref, match in matches.items():
            if match is not None:
                await session.feed(LibraryBound(answer_ref, match.library_id, match.label))

    async def _persist_answers(self, run: _WorkflowRun, question_ref: int) -> None:
        """Attach new answers in one call, then send answer updates."""
        session = self.session
        tree = session.tree()
        question_id = tree.canonical_id(question_ref)
        live = [a for a in tree.child_entities(question_ref) if not a.is_deleted]
        new = [a for a in live if not tree.is_persisted(a.ref)]

        if new:
            payloads = [answer_payload(a, a.sort_order) for a in new]
            body = await session.api.add_answers_to_question(question_id, payloads)
            if isinstance(body, dict) and body.get('detail'):
                await session.feed(MessagePosted(Severity.WARNING.value, str(body['detail']), run.stage.value))
            ids = answer_ids(body)
            ids = (ids + [None] * len(new))[:len(new)]
            await session.feed(ChildrenPersisted(question_ref, tuple(a.ref for a in new), tuple(ids)))
            if None in ids:
                logger.info(f"Answer ids missing for question {question_id}; reloading section")
                await session.reload_section(tree.get(question_ref).section_ref)

        tree = session.tree()
        tracker = session.tracker()
        for answer in tree.child_entities(question_ref):
            entry = tracker.get(answer.ref)
            if entry is None or entry.action != ChangeAction.UPDATE or not tree.is_persisted(answer.ref):
                continue
            payload = update_payload(entry.fields, ANSWER_API_FIELDS)
            if payload:
                await session.api.update_answer(tree.canonical_id(answer.ref), payload)
            await session.feed(FieldsPersisted(answer.ref, tuple(entry.fields)))

    async def _replace_with_library(self, run: _WorkflowRun, ref: int) -> None:
        """Swap a saved question for library content: add, rebind, delete old."""
        session = self.session
        tree = session.tree()
        question = tree.get(ref)
        old_id = tree.canonical_id(ref)
        section_id = tree.canonical_id(question.section_ref)

        body = await session.api.add_question_to_section(section_id, library_question_payload(question))
        new_id = _require_id(body, "question")
        await session.feed(EntityPersisted(ref, new_id))

        run.advance(SaveStage.DELETING_SOURCE)
        await session.api.delete_question(old_id)
        logger.info(f"Question {old_id} replaced by library question {new_id}")

    async def _publish_bundle(self, question_id: str) -> None:
        """Best effort: a failure is reported but never undoes the save."""
        try:
            await self.session.api.create_question_bundle(question_id)
            logger.info(f"Published library bundle for question {question_id}")
        except BuilderError as e:
            logger.warning(f"Bundle publication for {question_id} failed: {e}")
            await self.session.feed(MessagePosted(
                Severity.WARNING.value,
                f"Question saved, but publishing it to the library failed: {e}",
                SaveStage.BUNDLE_PUBLISHING.value,
            ))

    async def _save_section(self, ref: int, section: Section) -> WorkflowResult:
        session = self.session
        chain = [ref]
        if section.parent_ref is not None and not session.tree().is_persisted(section.parent_ref):
            chain.insert(0, section.parent_ref)
        in_flight = tuple(chain) if section.parent_ref is None else (section.parent_ref, ref)
        run = _WorkflowRun(ref, in_flight)
        run.advance(SaveStage.VALIDATING)

        try:
            for section_ref in chain:
                await self._persist_section(run, section_ref)
        except BuilderError as e:
            return await self._fail(run, e)

        tree = session.tree()
        return await self._succeed(run, tree.canonical_id(ref), f"Section '{tree.get(ref).label.strip()}' saved")

    async def _persist_section(self, run: _WorkflowRun, ref: int) -> None:
        session = self.session
        tree = session.tree()
        section = tree.get(ref)

        if tree.is_persisted(ref):
            entry = session.tracker().get(ref)
            if entry is None or entry.action != ChangeAction.UPDATE:
                return
            run.advance(SaveStage.PERSISTING)
            payload = update_payload(entry.fields, SECTION_API_FIELDS)
            if payload:
                await session.api.update_section(tree.canonical_id(ref), payload)
            await session.feed(FieldsPersisted(ref, tuple(entry.fields)))
            return

        if not section.library_id:
            run.advance(SaveStage.LIBRARY_CHECKING)
            try:
                match = await session.matcher.find_exact(section.label, 'section')
            except LibraryCheckFailure as e:
                logger.warning(f"{e}; saving section as new content")
                match = None
            if match is not None:
                await session.feed(LibraryBound(ref, match.library_id))

        run.advance(SaveStage.PERSISTING)
        tree = session.tree()
        section = tree.get(ref)
        parent_id = tree.canonical_id(section.parent_ref) if section.parent_ref is not None else None
        body = await session.api.add_section(section_payload(section, session.assessment_id, parent_id))
        await session.feed(EntityPersisted(ref, _require_id(body, "section")))

    # ========================
    # Move
    # ========================

    async def move(self, effect: StartMove) -> WorkflowResult:
        """
        Create in target -> attach answers -> delete from source.

        The source is deleted only after the target copy is confirmed.
        There is no compensating delete of the copy when the last step
        fails; the author sees the question in both sections.
        """
        session = self.session
        ref = effect.ref
        run = _WorkflowRun(ref, (ref,))
        tree = session.tree()
        question = tree.get(ref)
        source_id = tree.canonical_id(ref)
        target_id = tree.canonical_id(effect.target_section_ref)
        live_targets = [q for q in tree.child_entities(effect.target_section_ref) if not q.is_deleted]
        sort_order = len(live_targets) + 1
        new_id = None
        copied = False

        try:
            run.advance(SaveStage.PERSISTING)
            if question.library_id:
                payload = library_question_payload(question, sort_order)
            else:
                payload = {**question_payload(question), 'sort_order': sort_order}
            body = await session.api.add_question_to_section(target_id, payload)
            new_id = _require_id(body, "question")

            ids: List[Optional[str]] = []
            answers = [a for a in tree.child_entities(ref) if not a.is_deleted]
            if answers and not question.library_id:
                run.advance(SaveStage.ATTACHING_CHILDREN)
                payloads = [answer_payload(a, i + 1) for i, a in enumerate(answers)]
                ids = answer_ids(await session.api.add_answers_to_question(new_id, payloads))

            await session.feed(QuestionCopiedToSection(
                ref, effect.target_section_ref, new_id, tuple(ids), sort_order=sort_order,
            ))
            copied = True

            run.advance(SaveStage.DELETING_SOURCE)
            await session.api.delete_question(source_id)
            await self._remove_and_renumber(ref)
        except BuilderError as e:
            if copied:
                prefix = "Question was copied to the new section but is still in the old one. "
            elif new_id is not None:
                # the backend copy exists without its answers
                await session.feed(QuestionCopiedToSection(
                    ref, effect.target_section_ref, new_id, sort_order=sort_order, with_answers=False,
                ))
                prefix = "Question was created in the new section without its answers and is still in the old one. "
            else:
                prefix = ""
            return await self._fail(run, e, prefix)

        if question.library_id or (answers and (len(ids) < len(answers) or None in ids)):
            await session.reload_section(effect.target_section_ref)
        return await self._succeed(run, new_id, f"Question '{question.label.strip()}' moved")

    # ========================
    # Delete
    # ========================

    async def delete(self, effect: PersistDelete) -> WorkflowResult:
        session = self.session
        ref = effect.ref
        run = _WorkflowRun(ref, (ref,))
        tree = session.tree()
        entity = tree.find(ref)
        if entity is None:
            await session.feed(SaveFinished(run.in_flight, False))
            return run.result(False, None, f"Entity {ref} no longer exists")

        canonical_id = tree.canonical_id(ref)
        delete_calls = {
            Section: session.api.delete_section,
            Question: session.api.delete_question,
            Answer: session.api.delete_answer,
        }
        run.advance(SaveStage.PERSISTING)
        try:
            await delete_calls[type(entity)](canonical_id)
        except BuilderError as e:
            return await self._fail(run, e, f"Could not delete {entity.kind.value} '{entity.label.strip()}'. ")

        await self._remove_and_renumber(ref)
        return await self._succeed(run, canonical_id, f"Deleted {entity.kind.value} '{entity.label.strip()}'")

    async def _remove_and_renumber(self, ref: int) -> None:
        """
        Drop ref locally, then send the new sort_order of each saved
        sibling that moved up to close the gap.

        A failed renumbering is a warning; the delete itself succeeded.
        """
        session = self.session
        tree = session.tree()
        before = {r: tree.get(r).sort_order for r in tree.siblings(ref)}
        await session.feed(EntityRemoved(ref))

        tree = session.tree()
        update_calls = self._update_calls()
        for sibling_ref, sort_order in before.items():
            sibling = tree.find(sibling_ref)
            if sibling is None or sibling.sort_order == sort_order or not tree.is_persisted(sibling_ref):
                continue
            try:
                await update_calls[type(sibling)](tree.canonical_id(sibling_ref), {'sort_order': sibling.sort_order})
            except BuilderError as e:
                logger.warning(f"Renumbering {sibling_ref} after removing {ref} failed: {e}")
                await session.feed(MessagePosted(
                    Severity.WARNING.value,
                    f"Could not save the new position of {sibling.kind.value} '{sibling.label.strip()}': {e}",
                    SaveStage.PERSISTING.value,
                ))

    def _update_calls(self):
        api = self.session.api
        return {Section: api.update_section, Question: api.update_question, Answer: api.update_answer}

    # ========================
    # Reorder
    # ========================

    async def reorder(self, effect: PersistReorder) -> WorkflowResult:
        """
        Send every resequenced sibling's sort_order at once, then reload.

        Completion order of the individual updates does not matter: the
        reload that follows restores server truth.
        """
        session = self.session
        tree = session.tree()
        run = _WorkflowRun(effect.refs[0] if effect.refs else -1, tuple(effect.refs))
        update_calls = self._update_calls()

        run.advance(SaveStage.PERSISTING)
        failures = []
        try:
            calls = []
            for ref in effect.refs:
                entity = tree.get(ref)
                calls.append(update_calls[type(entity)](tree.canonical_id(ref), {'sort_order': entity.sort_order}))
            outcomes = await asyncio.gather(*calls, return_exceptions=True)

            for outcome in outcomes:
                if isinstance(outcome, BuilderError):
                    failures.append(outcome)
                elif isinstance(outcome, BaseException):
                    failures.append(outcome)
                    raise outcome

            for ref in effect.refs:
                await session.feed(FieldsPersisted(ref, ('sort_order',)))
        finally:
            await session.feed(SaveFinished(run.in_flight, not failures))
        await self._reload_container(effect.parent_ref, effect.refs)

        if failures:
            message = f"Could not save the new order for {len(failures)} item(s): {failures[0]}"
            await session.feed(MessagePosted(Severity.ERROR.value, message, SaveStage.PERSISTING.value))
            return run.result(False, None, message)
        message = f"Order saved for {len(effect.refs)} item(s)"
        logger.info(message)
        return run.result(True, None, message)

    async def _reload_container(self, parent_ref: Optional[int], refs: Tuple[int, ...]) -> None:
        session = self.session
        tree = session.tree()
        parent = tree.find(parent_ref)
        if parent_ref is None or (isinstance(parent, Section) and parent.is_parent):
            await session.reload_assessment()
        elif isinstance(parent, Section):
            await session.reload_section(parent_ref)
        elif isinstance(parent, Question):
            await session.reload_section(parent.section_ref)
