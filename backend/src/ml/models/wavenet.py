"""
WaveNet Regressor Model

Dilated causal 1-D convolutions over a [seq_len, n_features] window,
regressing a single 20-minute glucose delta (normalized units).
"""
import torch
import torch.nn as nn
import torch.nn.functional as F


class CausalConv1d(nn.Conv1d):
    """Conv1d that left-pads so output[t] only sees input[..t]."""

    def __init__(self, in_channels: int, out_channels: int, kernel_size: int, dilation: int = 1):
        super().__init__(in_channels, out_channels, kernel_size, dilation=dilation)
        self.left_padding = (kernel_size - 1) * dilation

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return super().forward(F.pad(x, (self.left_padding, 0)))


class ResidualBlock(nn.Module):
    """Gated activation unit with residual and skip outputs."""

    def __init__(self, channels: int, kernel_size: int, dilation: int):
        super().__init__()
        self.filter_conv = CausalConv1d(channels, channels, kernel_size, dilation)
        self.gate_conv = CausalConv1d(channels, channels, kernel_size, dilation)
        self.residual_conv = nn.Conv1d(channels, channels, 1)
        self.skip_conv = nn.Conv1d(channels, channels, 1)

    def forward(self, x: torch.Tensor):
        gated = torch.tanh(self.filter_conv(x)) * torch.sigmoid(self.gate_conv(x))
        return x + self.residual_conv(gated), self.skip_conv(gated)


class WaveNetRegressor(nn.Module):
    """
    WaveNet-style glucose regressor.

    Architecture:
    - 1x1 input projection: n_features -> channels
    - Residual blocks with dilations 1, 2, 4, 8 (receptive field covers 24 steps)
    - Summed skip connections -> ReLU -> 1x1 -> last timestep -> Linear(1)
    """

    def __init__(
        self,
        n_features: int = 8,
        channels: int = 32,
        kernel_size: int = 2,
        dilations: tuple = (1, 2, 4, 8),
        dropout_prob: float = 0.1
    ):
        super().__init__()

        self.n_features = n_features
        self.channels = channels

        self.input_conv = nn.Conv1d(n_features, channels, 1)
        self.blocks = nn.ModuleList(
            [ResidualBlock(channels, kernel_size, d) for d in dilations]
        )
        self.output_conv = nn.Conv1d(channels, channels, 1)
        self.dropout = nn.Dropout(dropout_prob)
        self.fc = nn.Linear(channels, 1)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Forward pass.

        Args:
            x: Input tensor of shape (batch, seq_len, n_features)

        Returns:
            Predictions of shape (batch,)
        """
        h = self.input_conv(x.transpose(1, 2))  # (batch, channels, seq_len)

        skip_total = torch.zeros_like(h)
        for block in self.blocks:
            h, skip = block(h)
            skip_total = skip_total + skip

        out = self.output_conv(F.relu(skip_total))
        last_step = self.dropout(F.relu(out[:, :, -1]))
        return self.fc(last_step).squeeze(-1)


# Model configuration constants (matching trained models)
WAVENET_MODEL_CONFIG = {
    "n_features": 8,
    "channels": 32,
    "kernel_size": 2,
    "dilations": (1, 2, 4, 8),
    "dropout_prob": 0.1,
    "seq_length": 24,  # 120 min / 5 min
    "sampling_min": 5,
    "horizon_min": 20,
}
