"""
Steam Identifier Utilities

Maps the 32-bit account ids that the game coordinator reports inside match
payloads onto canonical 64-bit SteamIDs (individual accounts, public universe).

The SteamID64 is the join key between provider payloads and the player table,
so the mapping is plain integer addition on top of a fixed base value.
"""

# SteamID64 of account id 0 in the public universe, individual account type
STEAM_ID64_BASE = 76561197960265728

# Account ids are 32-bit unsigned values
MAX_ACCOUNT_ID = 0xFFFFFFFF


def account_id_to_steam_id64(account_id: int) -> str:
    """
    Convert a short numeric account id into a SteamID64 string.

    Args:
        account_id: 32-bit account id as reported by the game coordinator

    Returns:
        Canonical SteamID64 as a decimal string

    Raises:
        ValueError: If the account id is zero, negative or out of range

    Example:
        >>> account_id_to_steam_id64(1)
        '76561197960265729'
    """
    account_id = int(account_id)
    if account_id <= 0 or account_id > MAX_ACCOUNT_ID:
        raise ValueError(f"Invalid account id: {account_id}")
    return str(STEAM_ID64_BASE + account_id)


def steam_id64_to_account_id(steam_id: str | int) -> int:
    """
    Convert a SteamID64 back into its short account id.

    Raises:
        ValueError: If the value is not a SteamID64 in the individual range
    """
    if not is_steam_id64(steam_id):
        raise ValueError(f"Not a SteamID64: {steam_id}")
    return int(steam_id) - STEAM_ID64_BASE


def is_steam_id64(value: str | int) -> bool:
    """Check whether a value is a SteamID64 with a non-zero account id."""
    text = str(value).strip()
    if not text.isdigit():
        return False
    offset = int(text) - STEAM_ID64_BASE
    return 0 < offset <= MAX_ACCOUNT_ID


def normalize_player_id(value: str | int) -> str:
    """
    Normalize user input into a canonical SteamID64 string.

    Accepts either a SteamID64 or a short account id (as printed in
    match payloads and some third-party sites).

    Raises:
        ValueError: If the value is neither
    """
    text = str(value).strip()
    if is_steam_id64(text):
        return text
    if text.isdigit():
        return account_id_to_steam_id64(int(text))
    raise ValueError(f"Invalid player id: {value!r}")
