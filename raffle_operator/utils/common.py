"""Common utility functions for the raffle operator."""

def shorten_eth_address(address: str) -> str:
    """Shorten an Ethereum address for display: '0x123456...abcd'.
    Returns the first 6 and last 4 characters, separated by '...'.
    Identifiers that are not hex addresses are returned unchanged.
    """
    if not address:
        return ""
    addr = address.lower()
    if not addr.startswith("0x"):
        return address
    addr = addr[2:]
    if len(addr) < 10:
        return f"0x{addr}"  # too short to shorten
    return f"0x{addr[:6]}...{addr[-4:]}"
