from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    status_code = 500
    default_message = 'Internal server error'

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class NotFoundError(ServiceError):
    status_code = 404
    default_message = 'Not found'


class ValidationError(ServiceError):
    status_code = 400
    default_message = 'Invalid request'


class UnauthorizedError(ServiceError):
    status_code = 403
    default_message = 'Not authorized'


class InternalError(ServiceError):
    status_code = 500


def validate_input(model: type[BaseModel], data: Any) -> Any:
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except SchemaValidationError as exc:
        details = {
            '.'.join(str(part) for part in err['loc']): err['msg']
            for err in exc.errors()
        }
        raise ValidationError('Invalid request data', details=details) from exc


@contextmanager
def storage_errors() -> Iterator[None]:
    """Translate storage-layer failures into the service error taxonomy."""
    try:
        yield
    except IntegrityError as exc:
        logger.info('Integrity violation: %s', exc.orig)
        raise ValidationError('Request references missing or conflicting data') from exc
    except SQLAlchemyError as exc:
        logger.exception('Storage failure')
        raise InternalError() from exc
