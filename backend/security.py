import hmac

from fastapi import Header, HTTPException

import backend.config as config


def verify_operator_key(candidate: str | None) -> bool:
    expected = (config.OPERATOR_KEY or "").strip()
    if not expected:
        return False
    return hmac.compare_digest((candidate or "").strip(), expected)


def require_operator(x_operator_key: str | None = Header(default=None)) -> dict:
    if not x_operator_key:
        raise HTTPException(status_code=401, detail="Missing operator key.")
    if not verify_operator_key(x_operator_key):
        raise HTTPException(status_code=403, detail="Invalid operator key.")
    return {"role": "operator"}
