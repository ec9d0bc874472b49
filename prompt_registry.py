"""
Prompt registry: named instruction templates for the six pipeline steps.

Templates come from prompt packs on disk (one directory per pack holding a
manifest.json and one text file per step) and, optionally, from a remote
registry endpoint that returns {"prompts": [...], "packs": [...]}.
Remote entries override local ones with the same id.

manifest.json:
    {"id": "core-tools", "name": "...", "version": "1.0", "author": "...",
     "prompts": [{"stepId": 1, "file": "step1.txt", "id": "S1_NEWS", "name": "..."}, ...]}
"""
import json
import os
from dataclasses import dataclass, field
from pathlib import Path

import requests

from config import PROMPT_PACKS_DIR, PROMPT_REGISTRY_URL, ConfigurationError

REQUIRED_STEPS = (1, 2, 3, 4, 5, 6)
USER_AGENT = "ScriptFactory/1.0 (prompt registry)"
REGISTRY_DEBUG = os.getenv("DEBUG", "").lower() in ("1", "true", "yes")


def _log(msg: str, verbose_only: bool = False) -> None:
    """Log with [REGISTRY] prefix. Use verbose_only for extra debug output."""
    if verbose_only and not REGISTRY_DEBUG:
        return
    print(f"[REGISTRY] {msg}")


class TemplateNotFoundError(ConfigurationError):
    """A step's template id could not be resolved to instruction text."""


@dataclass
class PromptTemplate:
    id: str
    name: str
    step_id: int
    content: str
    pack_id: str | None = None


@dataclass
class PromptPack:
    id: str
    name: str
    version: str = ""
    author: str = ""
    description: str = ""
    prompt_ids: dict[int, str] = field(default_factory=dict)  # step -> template id

    @property
    def missing_steps(self) -> list[int]:
        return [s for s in REQUIRED_STEPS if s not in self.prompt_ids]

    @property
    def is_valid(self) -> bool:
        return not self.missing_steps


class PromptRegistry:
    """Lookup of templates by id and of packs by id."""

    def __init__(self, packs_dir: str | Path | None = None, registry_url: str | None = None):
        self.packs_dir = Path(packs_dir if packs_dir is not None else PROMPT_PACKS_DIR)
        self.registry_url = registry_url if registry_url is not None else PROMPT_REGISTRY_URL
        self.templates: dict[str, PromptTemplate] = {}
        self.packs: dict[str, PromptPack] = {}

    def load(self) -> "PromptRegistry":
        """Load local packs, then the remote registry when a URL is configured."""
        self._load_local_packs()
        if self.registry_url:
            self._load_remote_registry()
        _log(f"Loaded {len(self.templates)} templates from {len(self.packs)} packs")
        return self

    def _load_local_packs(self) -> None:
        if not self.packs_dir.is_dir():
            _log(f"Prompt pack directory not found: {self.packs_dir}")
            return
        for pack_dir in sorted(p for p in self.packs_dir.iterdir() if p.is_dir()):
            manifest_path = pack_dir / "manifest.json"
            if not manifest_path.exists():
                _log(f"Missing manifest for pack: {pack_dir.name}")
                continue
            try:
                manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                _log(f"ERROR: Invalid manifest in pack {pack_dir.name}: {e}")
                continue
            pack = PromptPack(
                id=manifest.get("id") or pack_dir.name,
                name=manifest.get("name", pack_dir.name),
                version=manifest.get("version", ""),
                author=manifest.get("author", ""),
                description=manifest.get("description", ""),
            )
            for asset in manifest.get("prompts") or []:
                prompt_file = pack_dir / asset.get("file", "")
                if not prompt_file.is_file():
                    _log(f"Missing prompt file: {asset.get('file')} in pack {pack_dir.name}")
                    continue
                template = PromptTemplate(
                    id=asset["id"],
                    name=asset.get("name", asset["id"]),
                    step_id=int(asset["stepId"]),
                    content=prompt_file.read_text(encoding="utf-8"),
                    pack_id=pack.id,
                )
                self.add_template(template)
                pack.prompt_ids[template.step_id] = template.id
            if not pack.is_valid:
                _log(f"Pack '{pack.id}' is missing steps {pack.missing_steps}")
            self.packs[pack.id] = pack

    def _load_remote_registry(self) -> None:
        _log(f"Fetching remote registry: {self.registry_url}", verbose_only=True)
        try:
            resp = requests.get(
                self.registry_url,
                headers={"User-Agent": USER_AGENT},
                timeout=15,
            )
        except requests.RequestException as e:
            _log(f"ERROR: Remote registry unreachable ({e}). Using local packs only.")
            return
        if resp.status_code != 200:
            _log(f"Remote registry returned {resp.status_code}. Using local packs only.")
            return
        try:
            data = resp.json()
        except ValueError as e:
            _log(f"ERROR: Remote registry returned invalid JSON ({e}). Using local packs only.")
            return

        for item in data.get("prompts") or []:
            self.add_template(PromptTemplate(
                id=item["id"],
                name=item.get("name", item["id"]),
                step_id=int(item["stepId"]),
                content=item.get("content", ""),
                pack_id=item.get("packId"),
            ))
        for item in data.get("packs") or []:
            pack = PromptPack(
                id=item["id"],
                name=item.get("name", item["id"]),
                version=item.get("version", ""),
                author=item.get("author", ""),
                description=item.get("description", ""),
                prompt_ids={int(p["stepId"]): p["id"] for p in item.get("prompts") or []},
            )
            self.packs[pack.id] = pack

    def add_template(self, template: PromptTemplate) -> None:
        self.templates[template.id] = template
        if template.pack_id and template.pack_id in self.packs:
            self.packs[template.pack_id].prompt_ids[template.step_id] = template.id

    def resolve(self, step: int, template_id: str) -> str:
        """
        Return the instruction text for a step.

        Raises:
            TemplateNotFoundError: Unknown id, id registered for another step, or empty text.
        """
        template = self.templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Prompt template '{template_id}' not found for step {step}")
        if template.step_id != step:
            raise TemplateNotFoundError(
                f"Prompt template '{template_id}' belongs to step {template.step_id}, not step {step}"
            )
        if not template.content.strip():
            raise TemplateNotFoundError(f"Prompt template '{template_id}' is empty")
        return template.content

    def selection_for_pack(self, pack_id: str) -> dict[int, str]:
        """Template id per step for a complete pack."""
        pack = self.packs.get(pack_id)
        if pack is None:
            raise TemplateNotFoundError(f"Prompt pack '{pack_id}' not found")
        if not pack.is_valid:
            raise TemplateNotFoundError(f"Prompt pack '{pack_id}' is missing steps {pack.missing_steps}")
        return dict(pack.prompt_ids)

    def resolve_all(self, selection: dict[int, str]) -> dict[int, str]:
        """Resolve all six steps up front so configuration errors surface before any remote call."""
        missing = [s for s in REQUIRED_STEPS if s not in selection]
        if missing:
            raise TemplateNotFoundError(f"No template selected for steps {missing}")
        return {step: self.resolve(step, selection[step]) for step in REQUIRED_STEPS}
