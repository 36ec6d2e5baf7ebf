"""Container image build and registry publication through an environment."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from shipline.constants import LATEST_TAG
from shipline.environments.base import CommandSpec
from shipline.environments.container import ContainerRuntime
from shipline.pipeline.models import StageActionError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shipline.environments.base import CommandResult, Environment
    from shipline.versioning.resolver import Version

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PublishedImage:
    """One pushed registry reference and the local image it was tagged from."""

    reference: str
    tag: str
    source: str


class ImagePublisher:
    """Build an image for a version and push it as ``<version>`` and ``latest``.

    Both pushed tags are created from the same local image, so they always point
    at the same artifact.
    """

    def __init__(
        self,
        repository: str,
        *,
        runtime: ContainerRuntime | str = ContainerRuntime.DOCKER,
        latest_tag: str = LATEST_TAG,
    ) -> None:
        if not repository.strip():
            raise ValueError("repository must be non-empty")
        if ":" in repository.rsplit("/", 1)[-1]:
            raise ValueError("repository must not include a tag")
        if not latest_tag.strip():
            raise ValueError("latest_tag must be non-empty")
        self._repository = repository.strip()
        self._runtime = ContainerRuntime(str(runtime).strip().lower())
        self._latest_tag = latest_tag.strip()

    @property
    def repository(self) -> str:
        return self._repository

    def image_ref(self, version: Version) -> str:
        return f"{self._repository}:{version.render()}"

    def tags_for(self, version: Version) -> tuple[str, str]:
        return (version.render(), self._latest_tag)

    async def build(
        self,
        environment: Environment,
        version: Version,
        *,
        context_dir: str = ".",
        dockerfile: str | None = None,
        build_args: Sequence[str] = (),
    ) -> str:
        """Build the image in ``environment`` and return its local reference."""
        reference = self.image_ref(version)
        argv = [self._runtime.value, "build", "--tag", reference]
        if dockerfile:
            argv.extend(["--file", dockerfile])
        argv.extend(build_args)
        argv.append(".")
        await self._checked(environment, argv, context_dir, "image build failed")
        logger.info("image built", extra={"image": reference})
        return reference

    async def publish(
        self,
        environment: Environment,
        source: str,
        version: Version,
    ) -> tuple[PublishedImage, ...]:
        """Tag ``source`` with the version and latest tags, then push both."""
        published: list[PublishedImage] = []
        for tag in self.tags_for(version):
            reference = f"{self._repository}:{tag}"
            if reference != source:
                await self._checked(
                    environment,
                    [self._runtime.value, "tag", source, reference],
                    ".",
                    f"tagging {reference} failed",
                )
            await self._checked(
                environment,
                [self._runtime.value, "push", reference],
                ".",
                f"pushing {reference} failed",
            )
            published.append(PublishedImage(reference=reference, tag=tag, source=source))
            logger.info("image pushed", extra={"image": reference, "source_image": source})
        return tuple(published)

    async def _checked(
        self,
        environment: Environment,
        argv: Sequence[str],
        cwd: str,
        message: str,
    ) -> CommandResult:
        result = await environment.run(CommandSpec(argv=tuple(argv), cwd=cwd))
        if not result.succeeded:
            tail = (result.stderr or result.stdout).strip()[-400:]
            raise StageActionError(f"{message} (exit {result.exit_code}): {tail}".rstrip(": "))
        return result


__all__ = ["ImagePublisher", "PublishedImage"]
