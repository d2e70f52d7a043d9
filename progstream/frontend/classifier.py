from typing import Dict, List, Optional, Sequence, Union

import torch
import torch.nn.functional as F

from ..models import GraphModel, LayersModel


class Classifier:
    """Top-k classification on top of a (possibly partially loaded) model.

    Usage:
        loader = ProgressiveLoader(url)
        await loader.init()
        while await loader.advance_one_step() >= 0:
            print(Classifier(loader.model).classify(image))
    """

    def __init__(
        self,
        model: Union[LayersModel, GraphModel],
        input_min: float = -1.0,
        input_max: float = 1.0,
        image_size: Optional[int] = None,
        class_names: Optional[Sequence[str]] = None,
        drop_background: bool = False,
    ):
        self.model = model
        self.input_min = input_min
        self.input_max = input_max
        self.normalization_constant = (input_max - input_min) / 255.0
        self.image_size = image_size
        self.class_names = list(class_names) if class_names is not None else None
        self.drop_background = drop_background

    @torch.no_grad()
    def infer(self, image: torch.Tensor) -> torch.Tensor:
        """Logits for one image given as [H, W] or channel-last [H, W, C] with values in [0, 255]."""
        image = torch.as_tensor(image)
        normalized = image.float() * self.normalization_constant + self.input_min
        if self.image_size is not None and tuple(normalized.shape[:2]) != (self.image_size, self.image_size):
            chw = normalized.unsqueeze(-1) if normalized.dim() == 2 else normalized
            chw = chw.permute(2, 0, 1).unsqueeze(0)
            resized = F.interpolate(chw, size=(self.image_size, self.image_size), mode="bilinear", align_corners=True)
            normalized = resized.squeeze(0).permute(1, 2, 0)
            if image.dim() == 2:
                normalized = normalized.squeeze(-1)
        logits = self.model.predict(normalized.unsqueeze(0))
        if self.drop_background:
            # first logit is the background class
            logits = logits[:, 1:]
        return logits

    def classify(self, image: torch.Tensor, topk: int = 3) -> List[Dict[str, object]]:
        logits = self.infer(image)
        probs = torch.softmax(logits.reshape(-1), dim=0)
        k = min(topk, probs.numel())
        values, indices = torch.topk(probs, k)
        results = []
        for prob, idx in zip(values.tolist(), indices.tolist()):
            results.append({
                "class_name": self.class_names[idx] if self.class_names is not None else str(idx),
                "class_id": idx,
                "probability": prob,
            })
        return results
