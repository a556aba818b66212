# Namespacing tag for upload task references owned by the order engine
UPLOAD_REFERENCE_PREFIX = "photobook-asset-upload:"

# Commerce statuses, normalized (lowercase, no separators)
IN_PROGRESS_STATUSES = {"received", "accepted"}
SUCCESS_STATUSES = {"paid", "validated", "processed"}
PAYMENT_ERROR_STATUSES = {"paymenterror"}

DEFAULT_POLL_INTERVAL_SECONDS = 0.5
DEFAULT_MAX_POLLS = 60


def reference_for(identifier: str) -> str:
    return f"{UPLOAD_REFERENCE_PREFIX}{identifier}"


def identifier_from(reference: str) -> str:
    return reference[len(UPLOAD_REFERENCE_PREFIX):]
