from __future__ import annotations

import base64
import binascii
import json
from pathlib import Path

from solders.keypair import Keypair

from vaultledger.core.config import Settings
from vaultledger.core.errors import SigningError


def load_fee_payer(settings: Settings) -> Keypair:
    # Prefer the base64 secret from the environment over the keypair file.
    if settings.deployer_keypair_base64:
        try:
            raw = base64.b64decode(settings.deployer_keypair_base64, validate=True)
            return Keypair.from_bytes(raw)
        except (binascii.Error, ValueError) as exc:
            raise SigningError("invalid base64 fee payer keypair") from exc
    if not settings.deployer_keypair_path:
        raise SigningError("fee payer keypair is not configured")
    path = Path(settings.deployer_keypair_path).expanduser()
    try:
        # Solana CLI keypair files are a JSON array of 64 secret-key bytes.
        values = json.loads(path.read_text(encoding="utf-8"))
        return Keypair.from_bytes(bytes(values))
    except (OSError, ValueError, TypeError) as exc:
        raise SigningError(f"failed to read fee payer keypair from {path}") from exc
