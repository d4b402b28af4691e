"""Column mapping endpoints."""

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from rowbridge.core.deps import Services, get_services
from rowbridge.core.errors import APIException, ErrorCategory, ErrorCode
from rowbridge.core.session import get_session
from rowbridge.models.mapping import MappingChangeRequest, MappingResponse
from rowbridge.services.csv_parser import parse_headers
from rowbridge.services.matching import ColumnMapper

logger = logging.getLogger(__name__)

router = APIRouter()


async def _target_fields(services: Services, columns: List[str]) -> List[str]:
    """Field names offered as mapping targets.

    Taken from the template table when one is configured; otherwise every
    source column maps onto a field of the same name.
    """
    table_id = services.config.template_table_id
    if not table_id:
        return list(columns)
    fields = await services.credentials.call_with_refresh(
        lambda t: services.client.list_fields(t, table_id)
    )
    return [f["name"] for f in fields]


async def load_mapper(session: dict, services: Services) -> ColumnMapper:
    """The session's mapper, proposing one on first use."""
    stored = session.get("mapping")
    if stored is not None:
        return ColumnMapper.from_dict(stored)

    record = services.store.load(session)
    if record is None:
        raise APIException(
            code=ErrorCode.UPLOAD_NOT_FOUND,
            message="No uploaded file in this session",
            category=ErrorCategory.NOT_FOUND,
            status_code=status.HTTP_404_NOT_FOUND,
        )
    columns = parse_headers(record.content)
    if not columns:
        raise APIException(
            code=ErrorCode.UPLOAD_INVALID_FILE,
            message="No header row found in the uploaded file",
            category=ErrorCategory.VALIDATION,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    mapper = ColumnMapper.propose(columns, await _target_fields(services, columns))
    session["mapping"] = mapper.to_dict()
    return mapper


def _response(mapper: ColumnMapper) -> MappingResponse:
    return MappingResponse(
        columns=mapper.columns,
        targets=mapper.targets,
        mappings=[mapper.mappings[c] for c in mapper.columns],
        stats=mapper.stats(),
        unmapped_columns=mapper.unmapped_columns(),
    )


@router.get("", response_model=MappingResponse)
async def get_mapping(
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> MappingResponse:
    """Current mapping; proposed from the header on first call."""
    return _response(await load_mapper(session, services))


@router.put("", response_model=MappingResponse)
async def change_mapping(
    request: MappingChangeRequest,
    session: dict = Depends(get_session),
    services: Services = Depends(get_services),
) -> MappingResponse:
    """
    Map one column onto a field, or ignore it with target ``ignore``.

    Another column holding the same field becomes unmapped. Taking a field
    from an exact match requires ``force``.
    """
    mapper = await load_mapper(session, services)
    mapper.handle_mapping_change(request.source_column, request.target, force=request.force)
    session["mapping"] = mapper.to_dict()
    return _response(mapper)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def reset_mapping(session: dict = Depends(get_session)) -> None:
    """Discard the mapping so the next read proposes a fresh one."""
    session.pop("mapping", None)
