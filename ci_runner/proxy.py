from __future__ import annotations

HEADER = "#!/bin/bash\nset +e\n"

RULE = "[ -x /usr/bin/socat ] && socat TCP-LISTEN:{port},fork TCP:{ip}:{port} &\n"


class Proxy:
    """Maps local ports to service container addresses using socat."""

    def __init__(self) -> None:
        self._rules: dict[str, str] = {}

    def set(self, port: str, ip: str) -> None:
        self._rules[port] = ip

    def render(self) -> str:
        rules = [
            RULE.format(port=port, ip=self._rules[port])
            for port in sorted(self._rules, key=_port_key)
        ]
        return HEADER + "".join(rules)

    def __bytes__(self) -> bytes:
        return self.render().encode()


def _port_key(port: str) -> tuple[int, str]:
    return (int(port), port) if port.isdigit() else (1 << 16, port)
