"""
Scoring models - named numeric weightings over answers

ScoringBook holds the models of the open assessment, the one model
currently active for editing, and the score map per model keyed by
answer canonical id. Scores are kept as strings, exactly as they are sent.
"""

import copy
import logging
from typing import Any, Dict, List, Optional

from assessment_builder.commands import ScoresLoaded, ScoringModelsLoaded
from assessment_builder.contracts import Answer, ScoringModel
from assessment_builder.core.validation import check_single_active_model, require_label
from assessment_builder.errors import BuilderError, ValidationError
from assessment_builder.results import (
    LoadScoresEffect,
    LoadScoringModelsEffect,
    PersistScores,
    PersistScoringModel,
    RemoveScoringModel,
)
from assessment_builder.utils.helpers import labels_equal

logger = logging.getLogger(__name__)


def records(body: Any, key: str) -> List[Dict[str, Any]]:
    """List payload under key, or the body itself when it is a list."""
    if isinstance(body, list):
        return [r for r in body if isinstance(r, dict)]
    if isinstance(body, dict):
        value = body.get(key)
        if value is None:
            value = body.get('results')
        return [r for r in (value or []) if isinstance(r, dict)]
    return []


class ScoringBook:
    """Scoring models and their per-answer values"""

    def __init__(self):
        self.models: List[ScoringModel] = []
        self.active_model_id: Optional[str] = None
        self.scores: Dict[str, Dict[str, str]] = {}

    def model(self, model_id: str) -> Optional[ScoringModel]:
        for model in self.models:
            if model.id == str(model_id):
                return model
        return None

    def score(self, model_id: str, answer_id: str) -> Optional[str]:
        return self.scores.get(str(model_id), {}).get(str(answer_id))

    def values_payload(self, model_id: str) -> List[Dict[str, str]]:
        return [
            {'answer_id': answer_id, 'value': value}
            for answer_id, value in self.scores.get(str(model_id), {}).items()
        ]

    def snapshot(self) -> Dict[str, Any]:
        return {
            'models': [m.to_json() for m in self.models],
            'active_model_id': self.active_model_id,
            'scores': copy.deepcopy(self.scores),
        }

    @classmethod
    def from_snapshot(cls, snapshot: Optional[Dict[str, Any]]) -> "ScoringBook":
        book = cls()
        if snapshot:
            book.models = [ScoringModel(**m) for m in snapshot.get('models', [])]
            book.active_model_id = snapshot.get('active_model_id')
            book.scores = copy.deepcopy(snapshot.get('scores', {}))
        return book


def format_score(value: Any) -> str:
    """
    Validate a score and return its string form.

    Raises:
        ValidationError: If value is not numeric

    Examples:
        >>> format_score(2)
        '2'
        >>> format_score(' 1.5 ')
        '1.5'
    """
    text = str(value).strip() if value is not None else ''
    try:
        float(text)
    except ValueError:
        raise ValidationError(f"Score must be a number, got {value!r}", field='value')
    return text


# ========================
# Reducer Handlers
# ========================

def load_scoring_models(ctx, action) -> None:
    ctx.emit(LoadScoringModelsEffect())


def scoring_models_loaded(ctx, action) -> None:
    book = ctx.scoring
    book.models = [ScoringModel.from_payload(m) for m in action.models]
    if book.active_model_id and book.model(book.active_model_id) is None:
        book.active_model_id = None


def create_scoring_model(ctx, action) -> None:
    ctx.require_editable()
    require_label(action.label, "Scoring model name")
    require_label(action.scoring_type, "Scoring type")
    if any(labels_equal(m.label, action.label) for m in ctx.scoring.models):
        raise ValidationError(f"Scoring model '{action.label.strip()}' already exists", field='label')
    ctx.emit(PersistScoringModel(action.label.strip(), action.scoring_type.strip()))


def delete_scoring_model(ctx, action) -> None:
    ctx.require_editable()
    book = ctx.scoring
    if book.model(action.model_id) is None:
        raise ValidationError(f"Unknown scoring model {action.model_id}")
    book.models = [m for m in book.models if m.id != str(action.model_id)]
    book.scores.pop(str(action.model_id), None)
    if book.active_model_id == str(action.model_id):
        book.active_model_id = None
    ctx.emit(RemoveScoringModel(str(action.model_id)))


def activate_scoring_model(ctx, action) -> None:
    book = ctx.scoring
    model_id = str(action.model_id)
    if book.model(model_id) is None:
        raise ValidationError(f"Unknown scoring model {model_id}")
    check_single_active_model(book.active_model_id, model_id)
    book.active_model_id = model_id
    if model_id not in book.scores:
        ctx.emit(LoadScoresEffect(model_id))


def deactivate_scoring_model(ctx, action) -> None:
    ctx.scoring.active_model_id = None


def scores_loaded(ctx, action) -> None:
    values = {}
    for record in action.values:
        answer_id = record.get('answer_id') or record.get('answer')
        if answer_id is None or record.get('value') is None:
            continue
        values[str(answer_id)] = str(record['value'])
    ctx.scoring.scores[str(action.model_id)] = values


def set_score(ctx, action) -> None:
    ctx.require_editable()
    book = ctx.scoring
    if book.active_model_id is None:
        raise ValidationError("Activate a scoring model before setting scores", field='scoring_model')
    answer = ctx.tree.get(action.answer_ref)
    if not isinstance(answer, Answer):
        raise ValidationError(f"Entity {action.answer_ref} is not an answer")
    answer_id = ctx.answer_id(action.answer_ref)
    book.scores.setdefault(book.active_model_id, {})[answer_id] = format_score(action.value)
    ctx.emit(PersistScores(book.active_model_id))


# ========================
# Saga
# ========================

class ScoringService:
    """Runs scoring effects against the content API"""

    def __init__(self, session):
        self.session = session

    async def load_models(self, effect=None) -> None:
        session = self.session
        try:
            body = await session.api.list_scoring_models(session.assessment_id)
        except BuilderError as e:
            logger.error(f"Loading scoring models failed: {e}")
            await session.post('error', f"Could not load scoring models: {e}")
            return
        await session.feed(ScoringModelsLoaded(tuple(records(body, 'scoring_models'))))

    async def create_model(self, effect: PersistScoringModel) -> None:
        session = self.session
        payload = {
            'guideline_template_id': session.assessment_id,
            'label': effect.label,
            'scoring_type': effect.scoring_type,
        }
        try:
            await session.api.create_scoring_model(payload)
        except BuilderError as e:
            logger.error(f"Creating scoring model failed: {e}")
            await session.post('error', f"Could not create scoring model: {e}")
            return
        await session.post('success', f"Scoring model '{effect.label}' created")
        await self.load_models()

    async def remove_model(self, effect: RemoveScoringModel) -> None:
        session = self.session
        try:
            await session.api.delete_scoring_model(session.assessment_id, effect.model_id)
        except BuilderError as e:
            logger.error(f"Deleting scoring model {effect.model_id} failed: {e}")
            await session.post('error', f"Could not delete scoring model: {e}")
        await self.load_models()

    async def load_scores(self, effect: LoadScoresEffect) -> None:
        session = self.session
        try:
            body = await session.api.get_scoring_model(session.assessment_id, effect.model_id)
        except BuilderError as e:
            logger.error(f"Loading scores for {effect.model_id} failed: {e}")
            await session.post('error', f"Could not load scores: {e}")
            return
        await session.feed(ScoresLoaded(effect.model_id, tuple(records(body, 'values'))))

    async def persist_scores(self, effect: PersistScores) -> None:
        session = self.session
        book = session.scoring_book()
        model = book.model(effect.model_id)
        if model is None:
            logger.warning(f"Scoring model {effect.model_id} vanished before save")
            return
        payload = {
            'guideline_template_id': session.assessment_id,
            'label': model.label,
            'scoring_type': model.scoring_type,
            'values': book.values_payload(model.id),
        }
        try:
            await session.api.update_scoring_model(model.id, payload)
        except BuilderError as e:
            logger.error(f"Saving scores for {model.id} failed: {e}")
            await session.post('error', f"Could not save scores: {e}")
            return
        logger.info(f"Saved {len(payload['values'])} score(s) for model {model.id}")

