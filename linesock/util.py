from ._types import Address


def format_addr(addr: Address | None) -> str:
    if addr is None:
        return "-"
    if isinstance(addr, (tuple, list)) and len(addr) >= 2:
        host, port = str(addr[0]), int(addr[1])
        if ":" in host:
            # It's an IPv6 address.
            return "[%s]:%d" % (host, port)
        return "%s:%d" % (host, port)
    return str(addr)


def get_port(addr: Address | None) -> int | None:
    if isinstance(addr, (tuple, list)) and len(addr) >= 2:
        return int(addr[1])
    return None
