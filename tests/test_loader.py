import asyncio
import json

import httpx
import pytest
import torch
import torch.nn as nn

from progstream import (
    HttpFetcher,
    LoaderState,
    LocalFetcher,
    ManifestFetchError,
    NotInitializedError,
    PartitionFetchError,
    ProgressiveLoader,
    UnknownModelFormatError,
    convert,
    load_sequentially,
)
from progstream.converter import export_sequential
from progstream.quantization import max_abs_error

INTERFACE = (4, 4, 8, 16)


def make_model_dir(tmp_path, interface=INTERFACE):
    torch.manual_seed(0)
    seq = nn.Sequential(nn.Linear(6, 5), nn.ReLU(), nn.Linear(5, 3), nn.Softmax(dim=-1))
    seq.eval()
    model_json, weights = export_sequential(seq, (6,))
    out = tmp_path / "mlp"
    manifest = convert(model_json, weights, str(out), interface)
    return out, seq, weights, manifest


def http_fetcher_for(root, fail=()):
    """HttpFetcher whose transport serves files from `root` and 404s the names in `fail`."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        requested.append(name)
        path = root / name
        if name in fail or not path.exists():
            return httpx.Response(404)
        return httpx.Response(200, content=path.read_bytes())

    return HttpFetcher(transport=httpx.MockTransport(handler)), requested


def snapshot(model):
    return {name: t.clone() for name, t in model.weights.items()}


@pytest.mark.asyncio
async def test_advance_one_step_bookkeeping(tmp_path):
    out, _, _, manifest = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out))
    assert loader.state is LoaderState.UNINITIALIZED
    await loader.init()
    assert loader.state is LoaderState.INITIALIZED
    assert loader.num_steps == manifest.num_levels == 4

    steps = [await loader.advance_one_step() for _ in range(4)]
    assert steps == [0, 1, 2, 3]
    assert loader.is_complete
    assert loader.state is LoaderState.COMPLETED
    assert await loader.advance_one_step() == -1
    assert await loader.advance_one_step() == -1
    assert len(loader.accumulated) == 4


@pytest.mark.asyncio
async def test_num_steps_is_capped_by_levels(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    short = ProgressiveLoader(str(out), num_steps=2)
    await short.init()
    assert short.num_steps == 2
    long = ProgressiveLoader(str(out), num_steps=10)
    await long.init()
    assert long.num_steps == 4
    with pytest.raises(ValueError):
        ProgressiveLoader(str(out), num_steps=0)


@pytest.mark.asyncio
async def test_requires_init(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out))
    with pytest.raises(NotInitializedError):
        await loader.advance_one_step()
    with pytest.raises(NotInitializedError):
        await loader.drive(lambda model, is_last, step: None)
    with pytest.raises(NotInitializedError):
        loader.build_tensor_map()


@pytest.mark.asyncio
async def test_init_primes_model_with_midpoints(tmp_path):
    out, _, _, manifest = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out))
    await loader.init()
    bias = manifest.layers[1]
    assert bias.name == "dense_0/bias"
    expected = bias.quantization.min + bias.quantization.scale / 2
    assert torch.allclose(loader.model.weights["dense_0/bias"], torch.full((5,), expected))


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrent", [False, True])
async def test_drive_converges_to_original_weights(tmp_path, concurrent):
    out, seq, weights, manifest = make_model_dir(tmp_path)
    calls = []

    def on_step(model, is_last, step):
        calls.append((step, is_last))

    model = await load_sequentially(str(out), on_step, concurrent=concurrent)
    assert calls == [(0, False), (1, False), (2, False), (3, True)]

    for layer in manifest.layers:
        bound = max_abs_error(layer.quantization.scale, INTERFACE, 4)
        err = (model.weights[layer.name] - weights[layer.name]).abs().max().item()
        assert err <= bound + 1e-6, f"{layer.name}: {err} > {bound}"

    x = torch.randn(4, 6)
    with torch.no_grad():
        expected = seq(x)
    assert torch.allclose(model.predict(x), expected, atol=1e-4)


@pytest.mark.asyncio
async def test_sequential_and_pipelined_see_identical_steps(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    runs = {}
    for concurrent in (False, True):
        seen = []
        loader = ProgressiveLoader(str(out), concurrent=concurrent)
        await loader.init()
        await loader.drive(lambda model, is_last, step: seen.append((step, is_last, snapshot(model))))
        runs[concurrent] = seen

    assert [s[:2] for s in runs[False]] == [s[:2] for s in runs[True]]
    for (_, _, a), (_, _, b) in zip(runs[False], runs[True]):
        assert a.keys() == b.keys()
        for name in a:
            assert torch.equal(a[name], b[name]), name


@pytest.mark.asyncio
async def test_error_shrinks_step_by_step(tmp_path):
    out, _, weights, _ = make_model_dir(tmp_path)
    errors = []

    def on_step(model, is_last, step):
        errors.append(max((model.weights[n] - w).abs().max().item() for n, w in weights.items()))

    await load_sequentially(str(out), on_step, concurrent=False)
    assert all(b <= a + 1e-7 for a, b in zip(errors, errors[1:]))
    assert errors[-1] < errors[0]


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrent", [False, True])
async def test_async_callbacks(tmp_path, concurrent):
    out, _, _, _ = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out), concurrent=concurrent)
    await loader.init()
    reference = []
    seen = []

    async def on_step(model, is_last, step):
        seen.append((step, model.weights["dense_0/kernel"].clone()))

    def record(model, is_last, step):
        reference.append(model.weights["dense_0/kernel"].clone())

    await loader.drive(on_step)
    await loader.wait_pending_callbacks()
    assert not loader.pending_callbacks
    assert [step for step, _ in seen] == [0, 1, 2, 3]

    again = ProgressiveLoader(str(out), concurrent=False)
    await again.init()
    await again.drive(record)
    for (_, got), want in zip(seen, reference):
        assert torch.equal(got, want)


@pytest.mark.asyncio
async def test_failed_async_callback_is_logged_not_raised(tmp_path, caplog):
    out, _, _, _ = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out), concurrent=True)
    await loader.init()

    async def on_step(model, is_last, step):
        raise RuntimeError(f"boom {step}")

    await loader.drive(on_step)
    await loader.wait_pending_callbacks()
    assert loader.is_complete
    assert "progress callback failed" in caplog.text


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrent", [False, True])
async def test_partition_failure_keeps_partial_progress(tmp_path, concurrent):
    out, _, _, _ = make_model_dir(tmp_path)
    fetcher, _ = http_fetcher_for(out, fail=("part-2.bin",))
    async with fetcher:
        loader = ProgressiveLoader("https://models.test/mlp/", concurrent=concurrent, fetcher=fetcher)
        await loader.init()
        steps = []
        with pytest.raises(PartitionFetchError) as info:
            await loader.drive(lambda model, is_last, step: steps.append(step))
    assert info.value.step == 2
    assert info.value.url == "https://models.test/mlp/part-2.bin"
    assert steps == [0, 1]
    assert loader.current_step == 2
    assert len(loader.accumulated) == 2
    assert loader.state is LoaderState.FAILED


@pytest.mark.asyncio
async def test_truncated_partition_is_a_fetch_error(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    part = out / "part-1.bin"
    part.write_bytes(part.read_bytes()[:-1])
    loader = ProgressiveLoader(str(out))
    await loader.init()
    assert await loader.advance_one_step() == 0
    with pytest.raises(PartitionFetchError):
        await loader.advance_one_step()
    assert loader.current_step == 1


@pytest.mark.asyncio
async def test_http_fetcher_requests_files_in_order(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    fetcher, requested = http_fetcher_for(out)
    async with fetcher:
        model = await load_sequentially("https://models.test/mlp", lambda *args: None, concurrent=False, fetcher=fetcher)
    assert requested == ["progressive.json", "model.json", "part-0.bin", "part-1.bin", "part-2.bin", "part-3.bin"]
    assert model is not None


@pytest.mark.asyncio
async def test_manifest_fetch_error(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    fetcher, _ = http_fetcher_for(out, fail=("progressive.json",))
    async with fetcher:
        loader = ProgressiveLoader("https://models.test/mlp", fetcher=fetcher)
        with pytest.raises(ManifestFetchError):
            await loader.init()
    assert loader.state is LoaderState.FAILED

    with pytest.raises(ManifestFetchError):
        await ProgressiveLoader(str(tmp_path / "missing")).init()


@pytest.mark.asyncio
async def test_unknown_model_format(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    model_json = json.loads((out / "model.json").read_text())
    model_json["format"] = "onnx"
    (out / "model.json").write_text(json.dumps(model_json))
    with pytest.raises(UnknownModelFormatError):
        await ProgressiveLoader(str(out)).init()


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrent", [False, True])
async def test_graph_model_with_int32_const(tmp_path, concurrent):
    torch.manual_seed(0)
    model_json = {
        "format": "graph-model",
        "modelTopology": {"node": [
            {"name": "x", "op": "Placeholder"},
            {"name": "flat_shape", "op": "Const"},
            {"name": "w", "op": "Const"},
            {"name": "b", "op": "Const"},
            {"name": "flat", "op": "Reshape", "input": ["x", "flat_shape"]},
            {"name": "mm", "op": "MatMul", "input": ["flat", "w"]},
            {"name": "logits", "op": "BiasAdd", "input": ["mm", "b"]},
        ]},
        "weightsManifest": [{"paths": ["group1-shard1of1.bin"], "weights": []}],
    }
    weights = {
        "flat_shape": torch.tensor([-1, 8], dtype=torch.int32),
        "w": torch.randn(8, 2),
        "b": torch.randn(2),
    }
    manifest = convert(model_json, weights, str(tmp_path / "graph"), (8, 8, 16))
    assert manifest.layers[0].byte_sizes == (8, 0, 0)

    model = await load_sequentially(str(tmp_path / "graph"), lambda *args: None, concurrent=concurrent)
    assert model.weights["flat_shape"].dtype == torch.int32
    assert torch.equal(model.weights["flat_shape"], weights["flat_shape"])
    x = torch.randn(3, 2, 4)
    expected = x.reshape(-1, 8) @ weights["w"] + weights["b"]
    assert torch.allclose(model.predict(x), expected, atol=1e-4)


@pytest.mark.asyncio
async def test_failed_step_leaves_no_partial_state(tmp_path):
    out, _, weights, manifest = make_model_dir(tmp_path)
    loader = ProgressiveLoader(str(out))
    await loader.init()
    load_weights = loader.model.load_weights
    calls = []

    def flaky_load_weights(tensors):
        calls.append(len(tensors))
        if len(calls) == 1:
            raise RuntimeError("device lost")
        load_weights(tensors)

    loader.model.load_weights = flaky_load_weights
    with pytest.raises(PartitionFetchError) as info:
        await loader.advance_one_step()
    assert info.value.step == 0
    assert loader.state is LoaderState.FAILED
    assert loader.current_step == 0
    assert loader.accumulated == []

    # retrying must decode level 0 as level 0, not as level 1
    assert [await loader.advance_one_step() for _ in range(4)] == [0, 1, 2, 3]
    assert loader.state is LoaderState.COMPLETED
    kernel = manifest.layers[0]
    err = (loader.model.weights[kernel.name] - weights[kernel.name]).abs().max().item()
    assert err <= max_abs_error(kernel.quantization.scale, INTERFACE, 4) + 1e-6


@pytest.mark.asyncio
async def test_manifest_with_inconsistent_byte_sizes_is_rejected_at_init(tmp_path):
    out, _, _, _ = make_model_dir(tmp_path)
    manifest_json = json.loads((out / "progressive.json").read_text())
    kernel, bias = manifest_json["layers"][0], manifest_json["layers"][1]
    # same partition length, wrong split between layers
    kernel["byteSizes"][0] -= 1
    bias["byteSizes"][0] += 1
    (out / "progressive.json").write_text(json.dumps(manifest_json))

    loader = ProgressiveLoader(str(out))
    with pytest.raises(ManifestFetchError):
        await loader.init()
    assert loader.state is LoaderState.FAILED


@pytest.mark.asyncio
async def test_loader_closes_only_the_fetcher_it_created(tmp_path):
    owned = ProgressiveLoader("https://models.test/mlp")
    client = owned.fetcher.client
    async with owned:
        pass
    assert client.is_closed

    fetcher, _ = http_fetcher_for(tmp_path)
    async with ProgressiveLoader("https://models.test/mlp", fetcher=fetcher):
        pass
    assert not fetcher.client.is_closed
    await fetcher.aclose()
    assert fetcher.client.is_closed


@pytest.mark.asyncio
@pytest.mark.parametrize("fail", [(), ("part-1.bin",)])
async def test_load_sequentially_closes_its_fetcher(tmp_path, monkeypatch, fail):
    out, _, _, _ = make_model_dir(tmp_path)
    created = []

    def make_fetcher(url):
        fetcher, _ = http_fetcher_for(out, fail=fail)
        created.append(fetcher)
        return fetcher

    monkeypatch.setattr("progstream.loader.fetcher_for", make_fetcher)
    if fail:
        with pytest.raises(PartitionFetchError):
            await load_sequentially("https://models.test/mlp", lambda *args: None)
    else:
        await load_sequentially("https://models.test/mlp", lambda *args: None)
    assert len(created) == 1
    assert created[0].client.is_closed


class TracingFetcher(LocalFetcher):
    """LocalFetcher that records when each partition download starts and ends."""

    def __init__(self, events):
        self.events = events

    async def fetch_bytes(self, url):
        name = url.rsplit("/", 1)[-1]
        self.events.append(f"fetch-start {name}")
        data = await super().fetch_bytes(url)
        self.events.append(f"fetch-end {name}")
        return data


@pytest.mark.asyncio
@pytest.mark.parametrize("concurrent,max_prefetch", [(True, 0), (True, 1), (False, 0)])
async def test_fetch_and_callback_ordering(tmp_path, concurrent, max_prefetch):
    out, _, _, _ = make_model_dir(tmp_path)
    events = []
    loader = ProgressiveLoader(str(out), concurrent=concurrent, fetcher=TracingFetcher(events),
                               max_prefetch=max_prefetch)
    await loader.init()

    async def on_step(model, is_last, step):
        events.append(f"cb-start {step}")
        await asyncio.sleep(0.01)
        events.append(f"cb-end {step}")

    await loader.drive(on_step)
    await loader.wait_pending_callbacks()
    at = events.index
    assert [e for e in events if e.startswith("cb-start")] == [f"cb-start {k}" for k in range(4)]
    assert all(f"cb-end {k}" in events for k in range(4))

    if concurrent:
        # the next partition is already downloading when step 0 is handed over
        assert at("fetch-start part-1.bin") < at("cb-start 0")
        assert at("fetch-start part-1.bin") < at("cb-end 0")
    else:
        for k in range(3):
            assert at(f"fetch-end part-{k}.bin") < at(f"cb-start {k}")
            assert at(f"cb-end {k}") < at(f"fetch-start part-{k + 1}.bin")
    if max_prefetch == 1:
        # one buffered partition: part-3 cannot start before step 0 is consumed
        assert at("cb-start 0") < at("fetch-start part-3.bin")
