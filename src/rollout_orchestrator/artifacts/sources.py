"""
Base model sources and quantizers used by the artifact pipeline
"""

import asyncio
import contextlib
import logging
import shlex
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from ..utils.error_handling import ConfigurationError, DownloadError, QuantizationError

logger = logging.getLogger("rollout.app")


def _read_tree(root: Path) -> Dict[str, bytes]:
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


def _write_tree(root: Path, files: Dict[str, bytes]):
    for name, data in files.items():
        target = root / name
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class ModelSource:
    async def fetch(self, source_model_id: str) -> Dict[str, bytes]:
        """Return the base model as a mapping of relative file name to content"""
        raise NotImplementedError


class LocalModelSource(ModelSource):
    """Reads base models from <root>/<source_model_id>/"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    async def fetch(self, source_model_id: str) -> Dict[str, bytes]:
        model_dir = self.root / source_model_id
        if not model_dir.is_dir():
            raise ConfigurationError(f"Unknown source model: {source_model_id}")

        loop = asyncio.get_running_loop()
        try:
            files = await loop.run_in_executor(None, _read_tree, model_dir)
        except OSError as e:
            raise DownloadError(f"Failed to read source model {source_model_id}: {e}", cause=e) from e

        if not files:
            raise ConfigurationError(f"Source model {source_model_id} has no files")
        logger.info(f"Fetched source model {source_model_id} ({len(files)} files)")
        return files


class Quantizer:
    async def quantize(self, files: Dict[str, bytes], method: str, bit_width: int) -> Dict[str, bytes]:
        raise NotImplementedError


class CommandQuantizer(Quantizer):
    """
    Runs an external quantization tool.

    The command template is formatted with {method}, {bits}, {input} and
    {output}; the tool reads the base model tree from {input} and writes the
    quantized tree to {output}.
    """

    def __init__(
        self,
        command_template: str,
        supported_methods: Optional[Iterable[str]] = None,
        timeout: float = 3600.0
    ):
        self.command_template = command_template
        self.supported_methods = set(supported_methods) if supported_methods else None
        self.timeout = timeout

    async def quantize(self, files: Dict[str, bytes], method: str, bit_width: int) -> Dict[str, bytes]:
        if self.supported_methods is not None and method not in self.supported_methods:
            raise QuantizationError(f"Unsupported quantization method: {method}")

        loop = asyncio.get_running_loop()
        workdir = Path(tempfile.mkdtemp(prefix="quantize-"))
        input_dir, output_dir = workdir / "input", workdir / "output"
        output_dir.mkdir(parents=True)

        try:
            await loop.run_in_executor(None, _write_tree, input_dir, files)

            command = shlex.split(self.command_template.format(
                method=method, bits=bit_width, input=input_dir, output=output_dir
            ))
            logger.info(f"Running quantizer: {' '.join(command)}")

            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            try:
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
            except asyncio.TimeoutError:
                raise QuantizationError(f"Quantizer timed out after {self.timeout}s")
            finally:
                # timed out or cancelled; never leave the tool running
                if process.returncode is None:
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

            if process.returncode != 0:
                raise QuantizationError(
                    f"Quantizer exited with code {process.returncode}: "
                    f"{stderr.decode(errors='replace').strip()[-500:]}"
                )

            quantized = await loop.run_in_executor(None, _read_tree, output_dir)
            if not quantized:
                raise QuantizationError("Quantizer produced no output files")
            return quantized

        except OSError as e:
            raise QuantizationError(f"Quantizer could not be run: {e}", cause=e) from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)


class UnavailableQuantizer(Quantizer):
    """Used when no quantization command is configured; only published artifacts can be rolled out"""

    async def quantize(self, files: Dict[str, bytes], method: str, bit_width: int) -> Dict[str, bytes]:
        raise QuantizationError(
            "No quantization command configured (ROLLOUT_QUANTIZE_COMMAND); "
            "reference a published artifact by artifact_id instead"
        )
