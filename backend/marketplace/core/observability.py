import logging


def log_business_event(
    logger: logging.Logger,
    *,
    event: str,
    request_id: str | None = None,
    **fields,
) -> None:
    chunks = [f"event={event}", f"request_id={request_id or '-'}"]
    for key, value in fields.items():
        chunks.append(f"{key}={value}")
    logger.info("business_event %s", " ".join(chunks))
