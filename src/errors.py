import functools

import config


class AutogroupError(Exception):
    ...


class InvalidReference(AutogroupError):
    ...


class InvalidMemberReference(InvalidReference):
    ...


class InvalidScopeReference(InvalidReference):
    ...


class InvalidGroupReference(InvalidReference):
    ...


class InvalidRuleSetReference(InvalidReference):
    ...


class InvalidClassificationConfig(AutogroupError):
    ...


class PersistenceFailure(AutogroupError):
    ...


class DuplicateGroupLabel(PersistenceFailure):
    """Raised by a store when (scope_id, label) is already taken."""

    def __init__(self, scope_id: int, label: str) -> None:
        super().__init__(f"Group with label '{label}' already exists in scope {scope_id}")
        self.scope_id = scope_id
        self.label = label


logger = config.get_logger(service="errors")


def handle_errors(fn):  # noqa: ANN001, ANN201
    # A bad reference only aborts the unit of work it was raised in, everything else goes back
    # to the trigger caller, which owns the retry policy.
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):  # noqa: ANN002, ANN003, ANN202
        try:
            return fn(*args, **kwargs)
        except InvalidReference as e:
            logger.exception(f"Skipping {fn.__name__}: {e}", extra={"error_type": type(e).__name__})
            return False
        except Exception as e:
            logger.exception(f"{fn.__name__} failed: {e}", extra={"error_type": type(e).__name__})
            raise

    return wrapper
