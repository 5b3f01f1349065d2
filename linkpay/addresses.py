from solders.pubkey import Pubkey

from linkpay.errors import ValidationError
from linkpay.models import AssetType

# Every supported asset is addressed by a plain Solana account
SOLANA_ASSETS = {AssetType.SOL, AssetType.USDC, AssetType.USDT}


def is_valid_solana_address(address: str) -> bool:
    if not address or not isinstance(address, str):
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def validate_recipient(address: str, asset_type) -> str:
    asset = AssetType(asset_type)
    if asset in SOLANA_ASSETS and is_valid_solana_address(address):
        return address
    raise ValidationError(f"Invalid recipient address for {asset.value}: {address!r}")
