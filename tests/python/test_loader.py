import io
import logging

import numpy as np
import pytest
from archive_builder import (
    BIAS,
    WEIGHT,
    Obj,
    TensorRef,
    build_archive,
    dumps,
    linear_archive,
    linear_state,
    tensor_bytes,
)
from pydantic import ValidationError

from paramarchive import (
    ContainerOpenFailure,
    LoadError,
    LoadSettings,
    LoggingObserver,
    MalformedRecord,
    Module,
    PayloadShapeMismatch,
    RecordNotFound,
    Tensor,
    load_module,
    load_parameters,
)


class RecordingObserver:
    def __init__(self):
        self.events = []

    def on_enter_load_model(self):
        self.events.append(("enter",))

    def on_exit_load_model(self, name):
        self.events.append(("exit", name))

    def on_fail_load_model(self, message):
        self.events.append(("fail", message))


@pytest.fixture
def observer():
    return RecordingObserver()


def _nested_archive() -> bytes:
    net = Obj(
        "__torch__.Net",
        {
            "fc": Obj("__torch__.Linear", linear_state()),
            "scale": 1.0,
            "running_mean": TensorRef("2", (2,), requires_grad=False),
        },
    )
    return build_archive(
        {
            "data.pkl": dumps(net),
            "data/0": tensor_bytes(WEIGHT),
            "data/1": tensor_bytes(BIAS),
            "data/2": tensor_bytes([0.0, 0.0]),
        }
    )


def test_load_parameters(observer):
    params = load_parameters(linear_archive(), observer=observer)

    assert list(params) == ["weight", "bias"]
    np.testing.assert_array_equal(params["weight"], WEIGHT)
    np.testing.assert_array_equal(params["bias"], BIAS)
    assert all(isinstance(p, Tensor) and p.requires_grad for p in params.values())
    assert observer.events == [("enter",), ("exit", "__torch__.Linear")]


def test_nested_objects_use_dotted_names():
    params = load_parameters(_nested_archive())

    assert list(params) == ["fc.weight", "fc.bias"]


def test_load_module():
    module = load_module(_nested_archive())

    assert isinstance(module, Module)
    assert module.name == "__torch__.Net"
    assert module.get_attr("scale") == 1.0
    assert module.get_attr("running_mean").requires_grad is False
    assert [p.shape for p in module.parameters()] == [(2, 3), (2,)]


def test_loaded_tensors_are_independent_of_the_source():
    data = bytearray(linear_archive())

    params = load_parameters(io.BytesIO(data))
    params["weight"][0, 0] = 100.0

    np.testing.assert_array_equal(load_parameters(bytes(data))["weight"], WEIGHT)


def test_load_from_path(tmp_path):
    path = tmp_path / "linear.pt"
    path.write_bytes(linear_archive(root="linear", version=3))

    assert list(load_parameters(path)) == ["weight", "bias"]
    assert list(load_parameters(str(path))) == ["weight", "bias"]


def test_missing_structured_record(observer):
    data = build_archive({"constants.pkl": dumps(None)})

    with pytest.raises(LoadError, match="Record 'data.pkl' not found") as info:
        load_parameters(data, observer=observer)

    assert isinstance(info.value.__cause__, RecordNotFound)
    assert observer.events == [
        ("enter",),
        ("fail", "Error occurred during loading model: Record 'data.pkl' not found in archive."),
    ]


def test_missing_storage_record():
    data = build_archive({"data.pkl": dumps(Obj("__torch__.Linear", linear_state()))})

    with pytest.raises(LoadError, match="'data/0' not found") as info:
        load_parameters(data)

    assert isinstance(info.value.__cause__, RecordNotFound)


def test_missing_file(tmp_path, observer):
    with pytest.raises(LoadError, match="not found") as info:
        load_parameters(tmp_path / "missing.pt", observer=observer)

    assert isinstance(info.value.__cause__, FileNotFoundError)
    assert [event[0] for event in observer.events] == ["enter", "fail"]


def test_payload_without_attributes(observer):
    data = build_archive({"data.pkl": dumps(Obj("__torch__.Linear", 42))})

    with pytest.raises(LoadError, match="Expected a dict of attributes") as info:
        load_parameters(data, observer=observer)

    assert isinstance(info.value.__cause__, PayloadShapeMismatch)
    assert observer.events[-1][0] == "fail"
    assert len(observer.events) == 2


def test_root_must_be_an_object():
    data = build_archive({"data.pkl": dumps({"weight": 1})})

    with pytest.raises(LoadError, match="to be an object, got dict") as info:
        load_parameters(data)

    assert isinstance(info.value.__cause__, PayloadShapeMismatch)


def test_truncated_structured_record():
    pickled = dumps(Obj("__torch__.Linear", linear_state()))
    data = build_archive(
        {
            "data.pkl": pickled[:-1],
            "data/0": tensor_bytes(WEIGHT),
            "data/1": tensor_bytes(BIAS),
        }
    )

    with pytest.raises(LoadError, match="truncated or corrupt") as info:
        load_parameters(data)

    assert isinstance(info.value.__cause__, MalformedRecord)


def test_unsupported_container_version():
    with pytest.raises(LoadError) as info:
        load_parameters(linear_archive(version=42))

    assert isinstance(info.value.__cause__, ContainerOpenFailure)
    settings = LoadSettings(check_version=False)
    assert list(load_parameters(linear_archive(version=42), settings=settings))


@pytest.mark.parametrize("device", [None, "cpu", "cuda:1"])
def test_device_reaches_the_storage_factory(device):
    devices = []

    def factory(data, dtype, numel, location, target):
        devices.append(target)
        return np.frombuffer(data, dtype=dtype, count=numel).copy()

    params = load_parameters(linear_archive(), device, storage_factory=factory)

    assert devices == [device, device]
    np.testing.assert_array_equal(params["bias"], BIAS)


def test_explicit_device_overrides_settings():
    devices = []

    def factory(data, dtype, numel, location, target):
        devices.append(target)
        return np.zeros(numel, dtype=dtype)

    settings = LoadSettings(device="cpu")
    load_parameters(linear_archive(), "cuda:0", storage_factory=factory, settings=settings)
    load_parameters(linear_archive(), storage_factory=factory, settings=settings)

    assert devices == ["cuda:0", "cuda:0", "cpu", "cpu"]


def test_default_storages_live_on_the_host():
    with pytest.raises(LoadError, match="cannot be placed on device 'cuda:0'") as info:
        load_parameters(linear_archive(), "cuda:0")

    assert isinstance(info.value.__cause__, ValueError)


def test_invalid_device(observer):
    with pytest.raises(LoadError, match="Invalid device 'gpu0'") as info:
        load_parameters(linear_archive(), "gpu0", observer=observer)

    assert isinstance(info.value.__cause__, ValidationError)
    assert [event[0] for event in observer.events] == ["enter", "fail"]


def test_setstate_methods_take_priority():
    def setstate(instance, state):
        instance.set_attr("kernel", state["weight"])

    params = load_parameters(
        linear_archive(), methods={"__torch__.Linear.__setstate__": setstate}
    )

    assert list(params) == ["kernel"]
    np.testing.assert_array_equal(params["kernel"], WEIGHT)


def test_failure_without_message(observer):
    def setstate(instance, state):
        raise RuntimeError()

    with pytest.raises(LoadError, match="^unknown exception$") as info:
        load_parameters(
            linear_archive(),
            observer=observer,
            methods={"__torch__.Linear.__setstate__": setstate},
        )

    assert type(info.value.__cause__) is RuntimeError
    assert observer.events == [("enter",), ("fail", "unknown exception")]


def test_custom_namespace_and_archive_name():
    data = build_archive(
        {
            "weights.pkl": dumps(Obj("__model__.Linear", linear_state())),
            "weights/0": tensor_bytes(WEIGHT),
            "weights/1": tensor_bytes(BIAS),
        }
    )
    settings = LoadSettings(reserved_namespace="__model__", archive_name="weights")

    module = load_module(data, settings=settings)

    assert module.name == "__model__.Linear"
    assert list(module.named_parameters()) == ["weight", "bias"]

    with pytest.raises(LoadError, match="__model__.Linear"):
        load_module(data, settings=LoadSettings(archive_name="weights"))


def test_settings_validation():
    assert LoadSettings(device="cuda:3").device == "cuda:3"

    with pytest.raises(ValidationError):
        LoadSettings(reserved_namespace="not a namespace")
    with pytest.raises(ValidationError):
        LoadSettings(unknown=True)


def test_logging_observer(caplog):
    with caplog.at_level(logging.INFO, logger="paramarchive"):
        load_parameters(linear_archive(), observer=LoggingObserver())

    assert "Loaded model '__torch__.Linear'" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.INFO, logger="paramarchive"):
        with pytest.raises(LoadError):
            load_parameters(b"", observer=LoggingObserver())

    [failure] = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert failure.getMessage().startswith("Error occurred during loading model: ")


@pytest.mark.parametrize(
    ("with_bias", "expected"),
    [
        ("a", ["a.weight", "a.bias", "b.weight"]),
        ("b", ["a.weight", "b.weight", "b.bias"]),
    ],
)
def test_objects_of_one_class_with_and_without_bias(with_bias, expected):
    def block(name):
        bias = TensorRef("1", (2,)) if name == with_bias else None
        return Obj("__torch__.Block", {"weight": TensorRef("0", (2, 3)), "bias": bias})

    data = build_archive(
        {
            "data.pkl": dumps(Obj("__torch__.Net", {"a": block("a"), "b": block("b")})),
            "data/0": tensor_bytes(WEIGHT),
            "data/1": tensor_bytes(BIAS),
        }
    )

    params = load_parameters(data)

    assert list(params) == expected
    np.testing.assert_array_equal(params[f"{with_bias}.bias"], BIAS)


@pytest.mark.parametrize("device", ["xla:0", "hpu", "privateuseone", "privateuseone:1"])
def test_any_device_type_reaches_the_factory(device):
    devices = []

    def factory(data, dtype, numel, location, target):
        devices.append(target)
        return np.zeros(numel, dtype=dtype)

    load_parameters(linear_archive(), device, storage_factory=factory)

    assert LoadSettings(device=device).device == device
    assert devices == [device, device]


@pytest.mark.parametrize("device", ["gpu0", "CUDA", "cuda:", "cuda:0\n", ""])
def test_malformed_device_strings(device):
    with pytest.raises(ValidationError, match="Invalid device"):
        LoadSettings(device=device)


def test_exit_notification_errors_are_not_load_failures(observer):
    def on_exit_load_model(name):
        observer.events.append(("exit", name))
        raise KeyError("observer bookkeeping")

    observer.on_exit_load_model = on_exit_load_model

    with pytest.raises(KeyError, match="observer bookkeeping"):
        load_parameters(linear_archive(), observer=observer)

    assert observer.events == [("enter",), ("exit", "__torch__.Linear")]


class CountingAdapter:
    def __init__(self, data):
        self.data = data
        self.closed = 0

    def size(self):
        return len(self.data)

    def read(self, pos, n):
        return self.data[pos : pos + n]

    def close(self):
        self.closed += 1


def test_caller_adapters_are_not_closed():
    adapter = CountingAdapter(linear_archive())

    assert list(load_parameters(adapter)) == ["weight", "bias"]
    with pytest.raises(LoadError):
        load_parameters(CountingAdapter(b"not an archive"))

    assert adapter.closed == 0
    assert list(load_parameters(adapter)) == ["weight", "bias"]
