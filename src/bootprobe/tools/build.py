"""Kernel build orchestration via cargo."""

import logging
import subprocess
from typing import List, Optional

from bootprobe.core.errors import BuildFailure
from bootprobe.core.types import BuildArtifact, BuildConfig

logger = logging.getLogger(__name__)


class BuildOrchestrator:
    """Builds the kernel with cargo and locates the resulting artifact.

    The build is incremental; previous outputs under ``target/`` are never
    cleaned.

    Example:
        builder = BuildOrchestrator(BuildConfig(features=frozenset({"visualize-allocator"})))
        artifact = builder.build()
    """

    def __init__(self, config: Optional[BuildConfig] = None, cargo_path: str = "cargo") -> None:
        self.config = config or BuildConfig()
        self.cargo_path = cargo_path

    def command(self) -> List[str]:
        """Compose the cargo command line."""
        cmd = [self.cargo_path]
        if self.config.toolchain:
            cmd.append(f"+{self.config.toolchain}")
        cmd += ["build", "-p", self.config.package, "--target", self.config.target]
        if self.config.profile == "release":
            cmd.append("--release")
        if self.config.features:
            cmd += ["--features", ",".join(sorted(self.config.features))]
        return cmd

    def build(self) -> BuildArtifact:
        """Run the build.

        Returns:
            BuildArtifact whose path exists on disk

        Raises:
            BuildFailure: On a missing toolchain, non-zero exit, or missing
                artifact (compiler output attached)
        """
        cmd = self.command()
        if self.config.features:
            logger.info(f"Building {self.config.package} with features: "
                        f"{', '.join(sorted(self.config.features))}")
        else:
            logger.info(f"Building {self.config.package}")
        logger.debug(f"Build command: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=self.config.workspace,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise BuildFailure(f"Toolchain not found: '{self.cargo_path}'")

        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0:
            raise BuildFailure(
                f"Build failed with exit code {result.returncode}", output=output
            )

        path = self.config.artifact_path
        if not path.is_file():
            raise BuildFailure(f"Build succeeded but artifact is missing: {path}", output=output)

        logger.info(f"Built {path}")
        return BuildArtifact(path=path, config=self.config)
