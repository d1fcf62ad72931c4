"""Provisioning template models."""

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class TemplateScript(BaseModel):
    """Configuration script run inside the container."""
    model_config = ConfigDict(extra="forbid")

    id: Optional[str] = None
    name: str = Field(..., description="Script file name, e.g. setup.sh")
    order: int = Field(default=0)
    enabled: bool = Field(default=True)
    description: Optional[str] = None
    content: str = Field(..., description="Script body")


class TemplateFile(BaseModel):
    """File deployed into the container.

    Content is uploaded as written unless render is set, in which case it is
    rendered with Jinja2 first.
    """
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="File name")
    target_path: str = Field(..., description="Directory inside the container")
    content: str = Field(default="")
    render: bool = Field(default=False, description="Render content with Jinja2 before upload")


class TemplatePackage(BaseModel):
    """Package installed during setup."""
    name: str
    manager: Literal["apt", "pip"] = Field(default="apt")


class TemplateSpec(BaseModel):
    """Template specification."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., description="Template name")
    description: Optional[str] = None
    scripts: List[TemplateScript] = Field(default_factory=list)
    files: List[TemplateFile] = Field(default_factory=list)
    packages: List[TemplatePackage] = Field(default_factory=list)

    def ordered_scripts(self) -> List[TemplateScript]:
        """Scripts in execution order."""
        return sorted(self.scripts, key=lambda s: s.order)
