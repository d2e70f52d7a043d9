"""Write a model in the partitioned wire format read by ProgressiveLoader.

Output directory layout:
    model.json        topology with the format tag (weightsManifest removed)
    progressive.json  the PartitionManifest
    part-<i>.bin      level i of every layer, concatenated in manifest order
"""

import argparse
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .errors import UnsupportedDtypeError
from .quantization import encode
from .types import LayerDescriptor, PartitionManifest, QuantizationParams, validate_interface

logger = logging.getLogger(__name__)

DEFAULT_INTERFACE: Tuple[int, ...] = (2, 2, 2, 2, 2, 2, 2, 2)


def convert(
    model_json: Dict[str, Any],
    weights: Mapping[str, torch.Tensor],
    output_dir: str,
    interface: Sequence[int] = DEFAULT_INTERFACE,
) -> PartitionManifest:
    interface = validate_interface(interface)
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)

    queues: List[List[bytes]] = [[] for _ in interface]
    layers = []
    for name, tensor in weights.items():
        tensor = tensor.detach().cpu()
        shape = tuple(tensor.shape)
        if tensor.dtype == torch.float32:
            encoded = encode(tensor, interface)
            layers.append(LayerDescriptor(
                name=name,
                shape=shape,
                dtype="float32",
                byte_sizes=tuple(len(b) for b in encoded.buffers),
                quantization=QuantizationParams(min=encoded.min, scale=encoded.scale),
            ))
            for level, buffer in enumerate(encoded.buffers):
                queues[level].append(buffer)
        elif tensor.dtype == torch.int32:
            raw = tensor.contiguous().numpy().astype("<i4").tobytes()
            layers.append(LayerDescriptor(
                name=name,
                shape=shape,
                dtype="int32",
                byte_sizes=(len(raw),) + (0,) * (len(interface) - 1),
            ))
            queues[0].append(raw)
        else:
            raise UnsupportedDtypeError(f'Currently dtype "{tensor.dtype}" is not supported (tensor {name})')

    files = []
    for level, queue in enumerate(queues):
        file_name = f"part-{level}.bin"
        with open(out / file_name, "wb") as f:
            for buffer in queue:
                f.write(buffer)
        files.append(file_name)

    manifest = PartitionManifest(layers=tuple(layers), files=tuple(files), dividing_interface=interface)
    manifest.save_json(str(out / "progressive.json"))

    # weights travel in the partitions, not in the native manifest
    topology = {k: v for k, v in model_json.items() if k != "weightsManifest"}
    (out / "model.json").write_text(json.dumps(topology))
    logger.info("wrote %d layers in %d partitions to %s", len(layers), len(files), out)
    return manifest


_ACTIVATION_NAMES = {
    nn.ReLU: "relu",
    nn.ReLU6: "relu6",
    nn.Sigmoid: "sigmoid",
    nn.Tanh: "tanh",
    nn.Softmax: "softmax",
}


def export_sequential(
    module: nn.Sequential,
    input_shape: Sequence[int],
    name: str = "sequential",
) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
    """Describe a torch Sequential as a layers-model JSON plus its named weights."""
    layers: List[Dict[str, Any]] = []
    weights: Dict[str, torch.Tensor] = {}
    for index, child in enumerate(module):
        if isinstance(child, nn.Linear):
            layer_name = f"dense_{index}"
            layers.append({"class_name": "Dense", "config": {
                "name": layer_name,
                "units": child.out_features,
                "activation": "linear",
                "use_bias": child.bias is not None,
            }})
            # torch stores [out, in]; the layers format keeps kernels as [in, out]
            weights[f"{layer_name}/kernel"] = child.weight.detach().t().contiguous().float()
            if child.bias is not None:
                weights[f"{layer_name}/bias"] = child.bias.detach().clone().float()
        elif type(child) in _ACTIVATION_NAMES:
            layers.append({"class_name": "Activation", "config": {
                "name": f"activation_{index}", "activation": _ACTIVATION_NAMES[type(child)],
            }})
        elif isinstance(child, nn.Flatten):
            layers.append({"class_name": "Flatten", "config": {"name": f"flatten_{index}"}})
        elif isinstance(child, nn.Dropout):
            layers.append({"class_name": "Dropout", "config": {"name": f"dropout_{index}", "rate": child.p}})
        else:
            raise ValueError(f"Cannot export module of type {type(child).__name__}")
    if layers:
        layers[0]["config"]["batch_input_shape"] = [None] + [int(d) for d in input_shape]
    model_json = {
        "format": "layers-model",
        "modelTopology": {"class_name": "Sequential", "config": {"name": name, "layers": layers}},
    }
    return model_json, weights


def load_model_dir(model_dir: str, weights_file: Optional[str] = None) -> Tuple[Dict[str, Any], Dict[str, torch.Tensor]]:
    """Read model.json and a torch.save'd {name: tensor} map from a model directory."""
    root = Path(model_dir)
    model_json = json.loads((root / "model.json").read_text())
    weights_path = Path(weights_file) if weights_file else root / "weights.pt"
    weights = torch.load(weights_path, map_location="cpu", weights_only=True)
    return model_json, dict(weights)


def parse_interface(text: str) -> Tuple[int, ...]:
    return validate_interface([int(e) for e in text.split(",") if e.strip()])


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(
        prog="progstream-convert",
        description="Quantize a model into progressive partitions.",
        epilog="example: progstream-convert ./mlp ./mlp_44816 --interface 4,4,8,16",
    )
    parser.add_argument("model_dir", type=str)
    parser.add_argument("out_dir", type=str)
    parser.add_argument("--interface", type=str, default=",".join(str(b) for b in DEFAULT_INTERFACE))
    parser.add_argument("--weights", type=str, default=None, help="weight file (default: MODEL_DIR/weights.pt)")
    parser.add_argument("--log-level", type=str, default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    interface = parse_interface(args.interface)
    model_json, weights = load_model_dir(args.model_dir, args.weights)
    manifest = convert(model_json, weights, args.out_dir, interface)
    sizes = [manifest.partition_size(level) for level in range(manifest.num_levels)]
    print(json.dumps({"layers": len(manifest.layers), "interface": list(interface), "partition_bytes": sizes}))


if __name__ == "__main__":
    main()
