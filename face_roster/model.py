from __future__ import annotations

from pathlib import Path

import numpy as np
import torch

from .config import DEVICE, MODEL_INPUT_SIZE
from .exceptions import ModelError
from .logger import setup_logger


class EmbeddingModel:
    """Fixed-size normalized image in, fixed-length float vector out.

    Implementations report their output length once through ``output_dim``;
    ``infer`` must return exactly that many values for every call.
    """

    input_size: int = MODEL_INPUT_SIZE

    @property
    def output_dim(self) -> int:
        raise NotImplementedError

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def close(self) -> None:
        return None


class TorchScriptEmbeddingModel(EmbeddingModel):
    """Embedding model loaded from a TorchScript asset.

    The module receives a batch of one image, NCHW by default (``layout="nhwc"``
    for models exported from channels-last frameworks), and must return a
    ``(1, D)`` tensor.
    """

    def __init__(
        self,
        model_path: Path | str,
        input_size: int = MODEL_INPUT_SIZE,
        device: str = DEVICE,
        layout: str = "nchw",
    ) -> None:
        self.logger = setup_logger(self.__class__.__name__)
        self.model_path = Path(model_path)
        self.input_size = int(input_size)
        self.device = torch.device(device)
        self.layout = layout.lower()
        if self.layout not in {"nchw", "nhwc"}:
            raise ModelError(f"Unsupported tensor layout: {layout}")

        if not self.model_path.is_file():
            raise ModelError(f"Model asset not found: {self.model_path}")

        try:
            self.module = torch.jit.load(str(self.model_path), map_location=self.device).eval()
        except Exception as exc:
            raise ModelError(f"Failed to load model {self.model_path}: {exc}") from exc

        self._output_dim = self._probe_output_dim()
        self.logger.info(
            "Loaded embedding model %s on %s (input %dx%d, output %d)",
            self.model_path.name,
            self.device,
            self.input_size,
            self.input_size,
            self._output_dim,
        )

    @property
    def output_dim(self) -> int:
        return self._output_dim

    def infer(self, tensor: np.ndarray) -> np.ndarray:
        if self.module is None:
            raise ModelError("Model has been released.")

        expected = (self.input_size, self.input_size, 3)
        if tensor.shape != expected:
            raise ModelError(f"Input tensor shape {tensor.shape} does not match {expected}.")

        try:
            output = self._forward(torch.from_numpy(np.ascontiguousarray(tensor, dtype=np.float32)))
        except Exception as exc:
            raise ModelError(f"Inference failed: {exc}") from exc

        if tuple(output.shape) != (1, self._output_dim):
            raise ModelError(f"Model returned shape {tuple(output.shape)}, expected (1, {self._output_dim}).")
        return output[0].detach().cpu().numpy().astype(np.float32)

    def close(self) -> None:
        self.module = None

    def _forward(self, image: torch.Tensor) -> torch.Tensor:
        batch = image.unsqueeze(0)
        if self.layout == "nchw":
            batch = batch.permute(0, 3, 1, 2).contiguous()
        with torch.inference_mode():
            return self.module(batch.to(self.device))

    def _probe_output_dim(self) -> int:
        probe = torch.zeros((self.input_size, self.input_size, 3), dtype=torch.float32)
        try:
            output = self._forward(probe)
        except Exception as exc:
            raise ModelError(f"Model probe inference failed: {exc}") from exc

        shape = tuple(output.shape)
        if len(shape) != 2 or shape[0] != 1 or shape[1] <= 0:
            raise ModelError(f"Model output shape {shape} is not (1, D).")
        return int(shape[1])
