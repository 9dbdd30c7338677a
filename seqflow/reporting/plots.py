"""Headless-safe plotting of training curves."""

from __future__ import annotations

from pathlib import Path
from typing import List, Mapping, Tuple


class PlotAdapter:
    """Collect per-epoch loss and evaluation and optionally emit a figure."""

    def __init__(self, run_dir: str | Path, enable_plots: bool = False):
        self.enable_plots = enable_plots
        self.run_dir = Path(run_dir)
        self.history: List[Tuple[int, float, float]] = []
        if self.enable_plots:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    def on_epoch(self, epoch: int, metrics: Mapping[str, float]) -> None:
        self.history.append(
            (int(epoch), float(metrics.get("loss", 0.0)), float(metrics.get("evaluation", 0.0)))
        )

    def close(self) -> Path | None:
        if not self.enable_plots or not self.history:
            return None
        import matplotlib

        matplotlib.use("Agg", force=True)
        import matplotlib.pyplot as plt  # imported lazily for headless safety

        epochs, losses, evaluations = zip(*self.history)
        fig, ax = plt.subplots()
        ax.plot(epochs, losses, label="loss")
        ax.plot(epochs, evaluations, label="evaluation")
        ax.set_xlabel("Epoch")
        ax.set_ylabel("Value")
        ax.set_title("Training Curve")
        ax.legend()
        plot_path = self.run_dir / "loss.png"
        fig.savefig(plot_path)
        plt.close(fig)
        return plot_path

    __call__ = on_epoch


__all__ = ["PlotAdapter"]
