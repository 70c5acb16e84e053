"""Build manifest recorded next to a finished guest image."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path

import cbor2

from tdguest.models import StepRecord


@dataclass(frozen=True, slots=True)
class BuildManifest:
    cloud_img: str
    cloud_img_sha256: str
    image: str
    size_gb: int
    hostname: str
    user: str
    steps: tuple[StepRecord, ...] = field(default_factory=tuple)
    schema_version: int = 1

    def to_json(self, path: str | Path | None = None) -> str:
        encoded = json.dumps(self._payload(), indent=2, sort_keys=True) + "\n"
        if path is not None:
            Path(path).write_text(encoded, encoding="utf-8")
        return encoded

    def to_cbor(self, path: str | Path | None = None) -> bytes:
        encoded = cbor2.dumps(self._payload(), canonical=True)
        if path is not None:
            Path(path).write_bytes(encoded)
        return encoded

    def write(self, image_path: Path, *, fmt: str = "json") -> Path:
        if fmt == "cbor":
            path = image_path.with_name(image_path.name + ".manifest.cbor")
            self.to_cbor(path)
        else:
            path = image_path.with_name(image_path.name + ".manifest.json")
            self.to_json(path)
        return path

    @classmethod
    def from_cbor(cls, data: bytes) -> BuildManifest:
        return cls._from_payload(cbor2.loads(data))

    @classmethod
    def _from_payload(cls, payload: dict[str, object]) -> BuildManifest:
        raw_steps = payload.get("steps", [])
        steps = tuple(
            StepRecord(name=str(s["name"]), status=s["status"], detail=str(s.get("detail", "")))
            for s in raw_steps  # type: ignore[union-attr]
        )
        return cls(
            cloud_img=str(payload["cloud_img"]),
            cloud_img_sha256=str(payload["cloud_img_sha256"]),
            image=str(payload["image"]),
            size_gb=int(payload["size_gb"]),  # type: ignore[arg-type]
            hostname=str(payload["hostname"]),
            user=str(payload["user"]),
            steps=steps,
            schema_version=int(payload.get("schema_version", 1)),  # type: ignore[arg-type]
        )

    def _payload(self) -> dict[str, object]:
        return {
            "schema_version": self.schema_version,
            "cloud_img": self.cloud_img,
            "cloud_img_sha256": self.cloud_img_sha256,
            "image": self.image,
            "size_gb": self.size_gb,
            "hostname": self.hostname,
            "user": self.user,
            "steps": [
                {"name": step.name, "status": step.status, "detail": step.detail}
                for step in self.steps
            ],
        }
