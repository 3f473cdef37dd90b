from __future__ import annotations


class Dockerfile:
    def __init__(self, image: str) -> None:
        self._lines: list[str] = [f"FROM {image}"]

    def write_workdir(self, path: str) -> None:
        self._lines.append(f"WORKDIR {path}")

    def write_add(self, src: str, dest: str) -> None:
        self._lines.append(f"ADD {src} {dest}")

    def write_user(self, user: str) -> None:
        self._lines.append(f"USER {user}")

    def write_env(self, key: str, value: str) -> None:
        self._lines.append(f"ENV {key} {value}")

    def write_run(self, command: str) -> None:
        self._lines.append(f"RUN {command}")

    def write_entrypoint(self, command: str) -> None:
        self._lines.append(f"ENTRYPOINT {command}")

    def render(self) -> str:
        return "\n".join(self._lines) + "\n"

    def __bytes__(self) -> bytes:
        return self.render().encode()
