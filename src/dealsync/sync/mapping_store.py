"""State mapping repository: business state -> remote pipeline/stage.

Used by the adapter layer to translate outbound states and, in reverse,
to map a remote stage back to a business state on pulls.
"""

from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.dealsync.sync.exceptions import InvalidReference
from src.dealsync.sync.models import StateMappingModel
from src.dealsync.sync.schemas import BusinessState, StateMapping


def _model_to_mapping(model: StateMappingModel) -> StateMapping:
    return StateMapping(
        owner_id=model.owner_id,
        business_state=BusinessState(model.business_state),
        remote_pipeline_id=model.remote_pipeline_id,
        remote_stage_id=model.remote_stage_id,
    )


class StateMappingStore:
    """Per-owner lookup of remote pipeline and stage identifiers.

    Args:
        session_factory: async_sessionmaker producing AsyncSession instances.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(
        self, owner_id: str, state: BusinessState
    ) -> tuple[str, str] | None:
        """Return ``(pipeline_id, stage_id)`` for a state, or None if unmapped."""
        async with self._session_factory() as session:
            stmt = select(StateMappingModel).where(
                StateMappingModel.owner_id == owner_id,
                StateMappingModel.business_state == state.value,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                return None
            return model.remote_pipeline_id, model.remote_stage_id

    async def require(self, owner_id: str, state: BusinessState) -> tuple[str, str]:
        """Like get(), but an unmapped state is an invalid reference.

        Raises:
            InvalidReference: No mapping for ``state`` under ``owner_id``.
        """
        mapping = await self.get(owner_id, state)
        if mapping is None:
            raise InvalidReference("mapping", f"{owner_id}:{state.value}")
        return mapping

    async def find_state_for_stage(
        self, owner_id: str, stage_id: str
    ) -> BusinessState | None:
        """Reverse lookup; None when the remote stage is not mapped."""
        async with self._session_factory() as session:
            stmt = select(StateMappingModel.business_state).where(
                StateMappingModel.owner_id == owner_id,
                StateMappingModel.remote_stage_id == stage_id,
            )
            value = (await session.execute(stmt)).scalars().first()
            return BusinessState(value) if value else None

    async def list_for_owner(self, owner_id: str) -> list[StateMapping]:
        async with self._session_factory() as session:
            stmt = select(StateMappingModel).where(StateMappingModel.owner_id == owner_id)
            result = await session.execute(stmt)
            return [_model_to_mapping(m) for m in result.scalars().all()]

    async def upsert(
        self,
        owner_id: str,
        state: BusinessState,
        pipeline_id: str,
        stage_id: str,
    ) -> StateMapping:
        async with self._session_factory() as session:
            stmt = select(StateMappingModel).where(
                StateMappingModel.owner_id == owner_id,
                StateMappingModel.business_state == state.value,
            )
            model = (await session.execute(stmt)).scalar_one_or_none()
            if model is None:
                model = StateMappingModel(owner_id=owner_id, business_state=state.value)
                session.add(model)
            model.remote_pipeline_id = pipeline_id
            model.remote_stage_id = stage_id
            await session.commit()
            return _model_to_mapping(model)
