"""
Concrete encoder (psi network) implementations for replicate encoding.

The encoder processes individual replicates into fixed-dimensional
representations. Two architectures are provided:
- MLPEncoder: multi-layer perceptron for unstructured (vector) replicates
- CNNEncoder: 2D convolutional network for gridded replicates (C, H, W)
"""

from typing import Sequence, Tuple, Union
import math
import torch.nn as nn
from torch import Tensor

from .base import BasePsiNetwork, dense_layers


def _as_shape(shape: Union[int, Sequence[int]]) -> Tuple[int, ...]:
    if isinstance(shape, int):
        return (shape,)
    return tuple(int(s) for s in shape)


class MLPEncoder(BasePsiNetwork):
    """
    Multi-Layer Perceptron encoder for unstructured replicates.

    Architecture:
        Flatten → Linear → ReLU → ... → Linear

    Replicates of any shape are flattened, so a d-dimensional observation
    has input_shape (d,).

    Args:
        input_shape: Shape of one replicate, e.g. (d,) or d
        hidden_dim: Output dimension of the encoder
        hidden_layers: List of hidden layer sizes. Default: [256, 128].
                       An empty list gives a single linear map.
    """

    def __init__(
        self,
        input_shape: Union[int, Sequence[int]],
        hidden_dim: int = 128,
        hidden_layers: list = None,
    ):
        super().__init__()
        self._input_shape = _as_shape(input_shape)
        self._output_dim = hidden_dim

        if hidden_layers is None:
            hidden_layers = [256, 128]

        self.mlp = nn.Sequential(
            nn.Flatten(start_dim=1),
            *dense_layers(math.prod(self._input_shape), hidden_layers, hidden_dim),
        )

    def forward(self, x: Tensor) -> Tensor:
        """
        Encode replicates.

        Args:
            x: Input tensor of shape (n, *input_shape)

        Returns:
            Encoded tensor of shape (n, hidden_dim)
        """
        return self.mlp(x)

    @property
    def input_shape(self) -> Tuple[int, ...]:
        return self._input_shape

    @property
    def output_dim(self) -> int:
        return self._output_dim


class CNNEncoder(BasePsiNetwork):
    """
    2D Convolutional Neural Network encoder for gridded replicates.

    Architecture:
        Conv2d → BatchNorm → ReLU (repeated)
        AdaptiveAvgPool2d → Flatten → Linear

    Suitable for spatial fields observed on a fixed grid. Each replicate
    has shape (channels, height, width).

    Args:
        input_shape: Shape of one replicate (C, H, W)
        hidden_dim: Output dimension of the encoder
        channels: List of channel sizes for conv layers. Default: [16, 32, 64]
        kernel_size: Convolution kernel size. Default: 3
    """

    def __init__(
        self,
        input_shape: Sequence[int],
        hidden_dim: int = 128,
        channels: list = None,
        kernel_size: int = 3,
    ):
        super().__init__()
        self._input_shape = _as_shape(input_shape)
        if len(self._input_shape) != 3:
            raise ValueError(
                f"CNNEncoder expects input_shape (C, H, W), got {self._input_shape}"
            )
        self._output_dim = hidden_dim

        if channels is None:
            channels = [16, 32, 64]

        layers = []
        in_channels = self._input_shape[0]
        padding = kernel_size // 2

        for out_channels in channels:
            layers.extend(
                [
                    nn.Conv2d(
                        in_channels,
                        out_channels,
                        kernel_size=kernel_size,
                        padding=padding,
                    ),
                    nn.BatchNorm2d(out_channels),
                    nn.ReLU(inplace=True),
                ]
            )
            in_channels = out_channels

        # Global average pooling to get fixed-size output
        layers.extend([nn.AdaptiveAvgPool2d(1), nn.Flatten(start_dim=1)])

        self.conv_layers = nn.Sequential(*layers)
        self.projection = nn.Linear(in_channels, hidden_dim)

    def forward(self, x: Tensor) -> Tensor:
        """
        Encode gridded replicates.

        Args:
            x: Input tensor of shape (n, C, H, W)

        Returns:
            Encoded tensor of shape (n, hidden_dim)
        """
        x = self.conv_layers(x)  # (n, channels[-1])
        return self.projection(x)

    @property
    def input_shape(self) -> Tuple[int, ...]:
        return self._input_shape

    @property
    def output_dim(self) -> int:
        return self._output_dim
