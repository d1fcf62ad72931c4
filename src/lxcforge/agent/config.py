"""Configuration management for the agent."""

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML

from lxcforge.models.config import ForgeConfig
from lxcforge.models.template import TemplateSpec


logger = logging.getLogger(__name__)

# Environment variable -> (section, field)
ENV_OVERRIDES = {
    "REDIS_URL": ("redis", "url"),
    "PVE_HOST": ("proxmox", "host"),
    "PVE_PORT": ("proxmox", "port"),
    "PVE_TOKEN_ID": ("proxmox", "token_id"),
    "PVE_TOKEN_SECRET": ("proxmox", "token_secret"),
    "PVE_ROOT_PASSWORD": ("ssh", "password"),
    "ENCRYPTION_KEY": ("security", "encryption_key"),
}


class ConfigManager:
    """Loads config.yaml and the template library."""

    def __init__(self, config_dir: Path, environ: Optional[Mapping[str, str]] = None):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir)
        self.environ = environ if environ is not None else os.environ
        self.yaml = YAML(typ="safe")
        self.config: Optional[ForgeConfig] = None
        self.templates: Dict[str, TemplateSpec] = {}
        self._config_hashes: Dict[str, str] = {}

    async def load(self):
        """Load all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")
        self._config_hashes = {}
        await self._load_main_config()
        await self._load_templates()
        logger.info(f"Configuration loaded, {len(self.templates)} templates")

    async def _load_main_config(self):
        """Load main configuration file. A missing file means defaults."""
        config_file = self.config_dir / "config.yaml"
        data: Dict[str, Any] = {}
        if config_file.exists():
            data = await self._read_yaml(config_file) or {}
        else:
            logger.warning(f"Main config not found: {config_file}, using defaults")

        self._apply_env_overrides(data)
        try:
            self.config = ForgeConfig.model_validate(data)
        except ValidationError as e:
            logger.error(f"Invalid main config: {e}")
            raise

    def _apply_env_overrides(self, data: Dict[str, Any]):
        for env_name, (section, field) in ENV_OVERRIDES.items():
            value = self.environ.get(env_name)
            if value:
                data.setdefault(section, {})
                data[section][field] = value
                logger.debug(f"Config {section}.{field} overridden from {env_name}")

    async def _load_templates(self):
        """Load templates/*.yaml, one template per file, id = file stem."""
        templates_dir = self.config_dir / "templates"
        if not templates_dir.exists():
            logger.warning(f"Templates directory not found: {templates_dir}")
            self.templates = {}
            return

        templates: Dict[str, TemplateSpec] = {}
        for yaml_file in sorted(templates_dir.glob("*.yaml")):
            try:
                data = await self._read_yaml(yaml_file) or {}
                data.setdefault("name", yaml_file.stem)
                templates[yaml_file.stem] = TemplateSpec.model_validate(data)
                logger.debug(f"Loaded template from {yaml_file}")
            except Exception as e:
                logger.error(f"Error loading {yaml_file}: {e}")
        self.templates = templates

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse YAML file."""
        content = await asyncio.to_thread(file_path.read_text)
        self._config_hashes[str(file_path)] = hashlib.md5(content.encode()).hexdigest()
        return self.yaml.load(content)

    async def has_changed(self) -> bool:
        """Check if configuration files differ from what was loaded."""
        files = [p for p in self.config_dir.rglob("*.yaml")]
        if {str(p) for p in files} != set(self._config_hashes):
            return True
        for yaml_file in files:
            content = await asyncio.to_thread(yaml_file.read_text)
            if self._config_hashes.get(str(yaml_file)) != hashlib.md5(content.encode()).hexdigest():
                return True
        return False

    def get_template(self, template_id: Optional[str]) -> Optional[TemplateSpec]:
        """Get template by id."""
        if not template_id:
            return None
        return self.templates.get(template_id)

    def list_templates(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": template_id,
                "name": spec.name,
                "description": spec.description,
                "scripts": [s.name for s in spec.ordered_scripts()],
                "packages": len(spec.packages),
                "files": len(spec.files),
            }
            for template_id, spec in self.templates.items()
        ]
