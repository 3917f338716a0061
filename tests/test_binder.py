"""
Tests for the input binder firing rules.
"""

from pathlib import Path

import pytest

from chanflow.pipeline import (
    BindingError,
    Channel,
    ChannelRegistry,
    InputBinder,
    InputSpec,
    ProcessDefinition,
)


def bind_all(process, registry):
    return list(InputBinder(process, registry))


class TestZipFiring:
    """Test cases for non-repeater inputs."""

    def test_equal_channels_fire_per_item(self):
        """Two channels of three items fire three times, pairing items in order."""
        registry = ChannelRegistry()
        registry.declare("x", Channel.of(1, 2, 3))
        registry.declare("y", Channel.of("a", "b", "c"))
        process = ProcessDefinition(
            "pair", "echo $x $y", inputs=[InputSpec.val("x"), InputSpec.val("y")]
        )

        bindings = bind_all(process, registry)

        assert bindings == [
            {"x": 1, "y": "a"},
            {"x": 2, "y": "b"},
            {"x": 3, "y": "c"},
        ]

    def test_shortest_channel_stops_firing(self):
        """Firing stops as soon as one input channel is exhausted."""
        registry = ChannelRegistry()
        registry.declare("x", Channel.of(1, 2, 3))
        registry.declare("y", Channel.of("a"))
        process = ProcessDefinition(
            "pair", "true", inputs=[InputSpec.val("x"), InputSpec.val("y")]
        )

        assert len(bind_all(process, registry)) == 1

    def test_no_inputs_fires_once(self):
        """A process without inputs fires exactly once."""
        process = ProcessDefinition("hello", "echo hello")

        assert bind_all(process, ChannelRegistry()) == [{}]

    def test_explicit_channel_source(self):
        """A channel object can be given directly as source."""
        source = Channel.of("s1", "s2")
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.val("sample", source=source)]
        )

        assert bind_all(process, ChannelRegistry()) == [
            {"sample": "s1"},
            {"sample": "s2"},
        ]

    def test_named_source(self):
        """A string source refers to a registry channel."""
        registry = ChannelRegistry()
        registry.declare("samples", Channel.of("s1"))
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.val("sample", source="samples")]
        )

        assert bind_all(process, registry) == [{"sample": "s1"}]

    def test_implicit_source_by_name(self):
        """An input without source reads the same-named channel."""
        registry = ChannelRegistry()
        process = ProcessDefinition("p", "true", inputs=[InputSpec.val("reads")])
        binder = InputBinder(process, registry)

        assert "reads" in registry
        assert binder.source_of("reads") is registry["reads"]

    def test_file_values_become_paths(self):
        """File inputs are bound to paths."""
        registry = ChannelRegistry()
        registry.declare("fasta", Channel.of("/data/a.fa", ["/data/b.fa", "/data/c.fa"]))
        process = ProcessDefinition("p", "true", inputs=[InputSpec.file("fasta")])

        bindings = bind_all(process, registry)

        assert bindings[0] == {"fasta": Path("/data/a.fa")}
        assert bindings[1] == {"fasta": [Path("/data/b.fa"), Path("/data/c.fa")]}

    def test_invalid_file_value(self):
        """File inputs reject values that are not paths."""
        registry = ChannelRegistry()
        registry.declare("fasta", Channel.of(42))
        process = ProcessDefinition("p", "true", inputs=[InputSpec.file("fasta")])

        with pytest.raises(BindingError):
            bind_all(process, registry)


class TestRepeaters:
    """Test cases for each inputs."""

    def test_cartesian_product_order(self):
        """One shape times two colors times two sizes gives four firings."""
        registry = ChannelRegistry()
        registry.declare("shape", Channel.of("circle"))
        registry.declare("color", Channel.of("red", "blue"))
        registry.declare("size", Channel.of(1, 2))
        process = ProcessDefinition(
            "draw",
            "true",
            inputs=[
                InputSpec.val("shape"),
                InputSpec.each("color"),
                InputSpec.each("size"),
            ],
        )

        combos = [
            (b["shape"], b["color"], b["size"]) for b in bind_all(process, registry)
        ]

        assert combos == [
            ("circle", "red", 1),
            ("circle", "red", 2),
            ("circle", "blue", 1),
            ("circle", "blue", 2),
        ]

    def test_repeater_per_natural_firing(self):
        """Every natural firing is expanded."""
        registry = ChannelRegistry()
        registry.declare("x", Channel.of(1, 2))
        registry.declare("mode", Channel.of("a", "b"))
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.val("x"), InputSpec.each("mode")]
        )

        assert len(bind_all(process, registry)) == 4

    def test_only_repeaters(self):
        """A process with repeaters only fires once per combination."""
        registry = ChannelRegistry()
        registry.declare("mode", Channel.of("fast", "slow"))
        process = ProcessDefinition("p", "true", inputs=[InputSpec.each("mode")])

        assert bind_all(process, registry) == [{"mode": "fast"}, {"mode": "slow"}]

    def test_list_item_is_collection(self):
        """A repeater channel carrying one list uses it as collection."""
        registry = ChannelRegistry()
        registry.declare("mode", Channel.of(["fast", "slow"]))
        process = ProcessDefinition("p", "true", inputs=[InputSpec.each("mode")])

        assert [b["mode"] for b in bind_all(process, registry)] == ["fast", "slow"]

    def test_empty_repeater(self):
        """An empty repeater collection is a binding error."""
        registry = ChannelRegistry()
        registry.declare("mode", Channel.of())
        process = ProcessDefinition("p", "true", inputs=[InputSpec.each("mode")])

        with pytest.raises(BindingError, match="no values"):
            bind_all(process, registry)


class TestSetInputs:
    """Test cases for set destructuring."""

    def test_destructuring(self):
        """Tuples are split positionally into members."""
        registry = ChannelRegistry()
        registry.declare("pairs", Channel.of(("S1", "/data/s1.fq"), ("S2", "/data/s2.fq")))
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.set("sample", "reads.fq", source="pairs")]
        )

        bindings = bind_all(process, registry)

        assert bindings == [
            {"sample": "S1", "reads.fq": Path("/data/s1.fq")},
            {"sample": "S2", "reads.fq": Path("/data/s2.fq")},
        ]

    def test_length_mismatch(self):
        """A tuple with the wrong arity is a binding error."""
        registry = ChannelRegistry()
        registry.declare("pairs", Channel.of(("S1",)))
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.set("sample", "reads.fq", source="pairs")]
        )

        with pytest.raises(BindingError, match="expects 2"):
            bind_all(process, registry)

    def test_not_a_tuple(self):
        """A scalar cannot be destructured."""
        registry = ChannelRegistry()
        registry.declare("pairs", Channel.of("S1"))
        process = ProcessDefinition(
            "p", "true", inputs=[InputSpec.set("sample", "x", source="pairs")]
        )

        with pytest.raises(BindingError, match="expects a tuple"):
            bind_all(process, registry)
