import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.core.database import ProfileRow, translate_db_errors
from chatdesk.core.exceptions import CannotDeleteDefaultProfileError, NotFoundError
from chatdesk.schemas.profiles import ModelParameters, Profile

logger = structlog.get_logger()


def _profile_from_row(row: ProfileRow) -> Profile:
    return Profile(
        id=row.id,
        name=row.name,
        model_name=row.model_name,
        api_endpoint=row.api_endpoint,
        is_default=row.is_default,
        parameters=ModelParameters(
            temperature=row.temperature,
            max_tokens=row.max_tokens,
            top_p=row.top_p,
            frequency_penalty=row.frequency_penalty,
            presence_penalty=row.presence_penalty,
        ),
    )


def _apply_profile(row: ProfileRow, profile: Profile) -> None:
    row.name = profile.name
    row.model_name = profile.model_name
    row.api_endpoint = profile.api_endpoint
    row.is_default = profile.is_default
    row.temperature = profile.parameters.temperature
    row.max_tokens = profile.parameters.max_tokens
    row.top_p = profile.parameters.top_p
    row.frequency_penalty = profile.parameters.frequency_penalty
    row.presence_penalty = profile.parameters.presence_penalty


class ProfileService:
    """Profile rows in the conversation store. Secrets live elsewhere."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save_profile(self, profile: Profile) -> Profile:
        """Insert a new profile. A default profile clears the flag on all others."""
        with translate_db_errors("save_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    if profile.is_default:
                        await self._clear_default(session)
                    row = ProfileRow(id=profile.id)
                    _apply_profile(row, profile)
                    session.add(row)

        logger.info("profile_saved", profile_id=profile.id, model=profile.model_name)
        return profile

    async def update_profile(self, profile: Profile) -> Profile:
        with translate_db_errors("update_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(ProfileRow, profile.id)
                    if row is None:
                        raise NotFoundError(f"Profile {profile.id} not found.")
                    if profile.is_default and not row.is_default:
                        await self._clear_default(session)
                    _apply_profile(row, profile)
        return profile

    async def delete_profile(self, profile_id: str) -> None:
        """Delete a non-default profile; conversations pointing at it keep a null profile_id."""
        with translate_db_errors("delete_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(ProfileRow, profile_id)
                    if row is None:
                        raise NotFoundError(f"Profile {profile_id} not found.")
                    if row.is_default:
                        raise CannotDeleteDefaultProfileError()
                    await session.delete(row)

        logger.info("profile_deleted", profile_id=profile_id)

    async def set_default_profile(self, profile_id: str) -> None:
        """Clear every default flag and set one, in a single transaction."""
        with translate_db_errors("set_default_profile"):
            async with self._session_factory() as session:
                async with session.begin():
                    row = await session.get(ProfileRow, profile_id)
                    if row is None:
                        raise NotFoundError(f"Profile {profile_id} not found.")
                    await self._clear_default(session)
                    row.is_default = True

        logger.info("default_profile_changed", profile_id=profile_id)

    async def get_default_profile(self) -> Profile | None:
        with translate_db_errors("get_default_profile"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(ProfileRow).where(ProfileRow.is_default.is_(True)).limit(1)
                )
                row = result.scalar_one_or_none()
                return _profile_from_row(row) if row else None

    async def get_profile(self, profile_id: str) -> Profile | None:
        with translate_db_errors("get_profile"):
            async with self._session_factory() as session:
                row = await session.get(ProfileRow, profile_id)
                return _profile_from_row(row) if row else None

    async def list_profiles(self) -> list[Profile]:
        with translate_db_errors("list_profiles"):
            async with self._session_factory() as session:
                result = await session.execute(select(ProfileRow).order_by(ProfileRow.name, ProfileRow.id))
                return [_profile_from_row(row) for row in result.scalars().all()]

    async def _clear_default(self, session: AsyncSession) -> None:
        await session.execute(update(ProfileRow).values(is_default=False))
