from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Union

import torch

from .base import ProgressiveModel


class Node(NamedTuple):
    name: str
    op: str
    inputs: List[str]
    attr: Dict[str, Any]


def _attr_bool(node: Node, key: str) -> bool:
    return bool(node.attr.get(key, {}).get("b", False))


def _matmul(node: Node, args: List[torch.Tensor]) -> torch.Tensor:
    a, b = args
    if _attr_bool(node, "transpose_a"):
        a = a.transpose(-2, -1)
    if _attr_bool(node, "transpose_b"):
        b = b.transpose(-2, -1)
    return torch.matmul(a, b)


def _reshape(node: Node, args: List[torch.Tensor]) -> torch.Tensor:
    x, shape = args
    return x.reshape([int(d) for d in shape.reshape(-1).tolist()])


OPS: Dict[str, Callable[[Node, List[torch.Tensor]], torch.Tensor]] = {
    "Identity": lambda node, args: args[0],
    "MatMul": _matmul,
    "BiasAdd": lambda node, args: args[0] + args[1],
    "Add": lambda node, args: args[0] + args[1],
    "AddV2": lambda node, args: args[0] + args[1],
    "Mul": lambda node, args: args[0] * args[1],
    "Relu": lambda node, args: torch.relu(args[0]),
    "Relu6": lambda node, args: torch.clamp(args[0], 0.0, 6.0),
    "Sigmoid": lambda node, args: torch.sigmoid(args[0]),
    "Tanh": lambda node, args: torch.tanh(args[0]),
    "Softmax": lambda node, args: torch.softmax(args[0], dim=-1),
    "Reshape": _reshape,
}


def _tensor_name(ref: str) -> str:
    return ref.split(":")[0]


class GraphModel(ProgressiveModel):
    """Executor for graph-model topologies (a list of named nodes, GraphDef style).

    Const nodes are the weights; they hold no value until `load_weights` supplies one.
    """

    def __init__(self, model_json: Dict[str, Any]):
        super().__init__()
        graph = model_json["modelTopology"]
        self.nodes: Dict[str, Node] = {}
        for entry in graph.get("node", []):
            # control dependencies ("^name") carry no data
            inputs = [_tensor_name(ref) for ref in entry.get("input", []) if not ref.startswith("^")]
            node = Node(entry["name"], entry["op"], inputs, entry.get("attr", {}))
            if node.op not in OPS and node.op not in ("Placeholder", "Const"):
                raise ValueError(f"Unsupported op {node.op} on node {node.name}")
            self.nodes[node.name] = node
            if node.op == "Const":
                self._weights[node.name] = None
        for node in self.nodes.values():
            for ref in node.inputs:
                if ref not in self.nodes:
                    raise ValueError(f"node {node.name} consumes unknown node {ref}")

        signature = (model_json.get("userDefinedMetadata") or {}).get("signature") or model_json.get("signature") or {}
        self.input_nodes = [_tensor_name(v["name"]) for v in signature.get("inputs", {}).values()]
        self.output_nodes = [_tensor_name(v["name"]) for v in signature.get("outputs", {}).values()]
        if not self.input_nodes:
            self.input_nodes = [n.name for n in self.nodes.values() if n.op == "Placeholder"]
        if not self.output_nodes:
            consumed = {ref for n in self.nodes.values() for ref in n.inputs}
            self.output_nodes = [n.name for n in self.nodes.values() if n.name not in consumed and n.op != "Const"]

    def _normalize_inputs(self, inputs) -> Dict[str, torch.Tensor]:
        if isinstance(inputs, Mapping):
            return {_tensor_name(k): torch.as_tensor(v) for k, v in inputs.items()}
        if not isinstance(inputs, (list, tuple)):
            inputs = [inputs]
        if len(inputs) != len(self.input_nodes):
            raise ValueError(
                f"Input tensor count mismatch, the graph model has {len(self.input_nodes)} placeholders, "
                f"while there are {len(inputs)} input tensors."
            )
        return {name: torch.as_tensor(t, dtype=torch.float32) for name, t in zip(self.input_nodes, inputs)}

    def _evaluate(self, name: str, cache: Dict[str, torch.Tensor]) -> torch.Tensor:
        stack = [name]
        expanded = set()
        while stack:
            current = stack[-1]
            if current in cache:
                stack.pop()
                continue
            node = self.nodes[current]
            if node.op == "Placeholder":
                raise ValueError(f"no value fed for placeholder {current}")
            if node.op == "Const":
                value = self._weights[current]
                if value is None:
                    raise ValueError(f"weight {current} has not been loaded")
                cache[current] = value
                stack.pop()
                continue
            pending = [ref for ref in node.inputs if ref not in cache]
            if pending:
                if current in expanded:
                    raise ValueError(f"cycle through node {current}")
                expanded.add(current)
                stack.extend(pending)
                continue
            cache[current] = OPS[node.op](node, [cache[ref] for ref in node.inputs])
            stack.pop()
        return cache[name]

    @torch.no_grad()
    def execute(self, inputs, outputs: Optional[Union[str, Sequence[str]]] = None):
        feed = self._normalize_inputs(inputs)
        if outputs is None:
            outputs = self.output_nodes
        elif isinstance(outputs, str):
            outputs = [outputs]
        cache = dict(feed)
        results = [self._evaluate(_tensor_name(name), cache) for name in outputs]
        return results[0] if len(results) == 1 else results

    def forward(self, inputs):
        return self.execute(inputs)

    def predict(self, inputs):
        return self.execute(inputs, self.output_nodes)
