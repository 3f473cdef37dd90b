from __future__ import annotations

import json

# Files in /etc/ci.d are sourced before the build runs; this is how the
# proxy script and image-provided setup (rbenv, nvm, ...) take effect.
BASE = """#!/bin/bash
if [ -d /etc/ci.d ]; then
  for i in /etc/ci.d/*.sh; do
    if [ -r $i ]; then
      . $i
    fi
  done
  unset i
fi

if [ ! -d $HOME/.ssh ]; then
  mkdir -p $HOME/.ssh
fi

chmod 0700 $HOME/.ssh
"""


class Buildfile:
    """Accumulates the shell script executed inside the build container."""

    def __init__(self) -> None:
        self._parts: list[str] = [BASE]

    def write(self, text: str) -> None:
        self._parts.append(text)

    def write_cmd(self, command: str) -> None:
        self.write(f"echo {_quote('$ ' + command)}\n{command}\n")

    def write_env(self, key: str, value: str) -> None:
        self.write(f"export {key}={_quote(value)}\n")

    def write_host(self, mapping: str) -> None:
        """Append ``host:address`` to /etc/hosts as ``address host``."""
        host, _, address = mapping.partition(":")
        entry = _quote(f"{address} {host}" if address else host)
        self.write(f"[ -f /usr/bin/sudo ] || echo {entry} | tee -a /etc/hosts\n")
        self.write(f"[ -f /usr/bin/sudo ] && echo {entry} | sudo tee -a /etc/hosts\n")

    def render(self) -> str:
        return "".join(self._parts)

    def __bytes__(self) -> bytes:
        return self.render().encode()


def _quote(value: str) -> str:
    # double quotes keep $VARIABLE expansion available to build authors
    return json.dumps(value, ensure_ascii=False)
