"""Tests for HarnessSynthesizer: argument construction, state reset and the exit check."""

import logging

import pytest

from symharness.analysis.entry_state import state_at_call
from symharness.backend.layout import DataLayout
from symharness.backend.verifier import default_verifier
from symharness.config import HarnessConfig
from symharness.errors import ConfigurationError, SignatureError
from symharness.harness import HarnessSynthesizer, LOCK_HELD_MESSAGE
from symharness.ir.loader import module_from_dict
from symharness.ir.module import Const, CStringRef, DebugLoc, GlobalRef, InstRef, Opcode
from symharness.ir.types import I1, I8, I32, I64, I8_PTR, FunctionType, PointerType, StructType, VOID


CALL_ASSERT = {
    "op": "call", "callee": "@__assert_fail",
    "operands": ["i8* null", "i8* null", "i32 0", "i8* null"],
}


def _asserting(name, fn_type, params):
    return {"name": name, "type": fn_type, "params": params,
            "blocks": [{"label": "entry", "instructions": [CALL_ASSERT, {"op": "unreachable"}]}]}


OPAQUE_TARGET = _asserting("opaque_target", "void (%struct.handle*)", ["h"])
FNPTR_TARGET = _asserting("fnptr_target", "void (void (i32)*)", ["cb"])
DOUBLE_TARGET = _asserting("double_target", "i32 (double, i32)", ["scale", "n"])
UNNAMED_TARGET = _asserting("unnamed_target", "void (i32)", [None])

SIZE_T_MAKE_SYMBOLIC = {"name": "klee_make_symbolic", "type": "void (i8*, i64, i8*)"}
INT_MALLOC = {"name": "malloc", "type": "i8* (i32)"}


def _calls(module, fid, name):
    return [i for i in module.instructions(fid)
            if isinstance(i.callee, GlobalRef) and i.callee.name == name]


def _string(module, ref):
    assert isinstance(ref, CStringRef)
    return module.globals[ref.name].initializer.text


def _named(module, fid, name):
    return next(i for i in module.instructions(fid) if i.name == name)


@pytest.fixture
def synth_for(config):
    def make(module, **overrides):
        cfg = HarnessConfig(**{**config.__dict__, **overrides})
        return HarnessSynthesizer(module, DataLayout(module), cfg)
    return make


@pytest.fixture
def extended(lock_dict):
    def make(state_init=0, extra_globals=()):
        data = lock_dict(state_init=state_init,
                         extra_functions=(OPAQUE_TARGET, FNPTR_TARGET, DOUBLE_TARGET,
                                          UNNAMED_TARGET))
        data["globals"].extend(extra_globals)
        return module_from_dict(data)
    return make


class TestArguments:
    def test_struct_pointer_points_into_buffer_middle(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        entry = harness.entry

        [malloc] = _calls(module, entry, "malloc")
        assert malloc.operands == [Const(I64, 24 * 4000)]
        size = _named(module, entry, "make_symbolic_size")
        assert size.opcode == Opcode.MUL
        assert size.operands == [Const(I32, 4000), Const(I32, 24)]
        mid = _named(module, entry, "dev.mid")
        assert mid.opcode == Opcode.GEP
        assert mid.operands[1] == Const(I64, 2000)
        assert mid.type == PointerType(StructType("struct.dev"))

    def test_integer_parameter_is_symbolic_slot(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        slot = _named(module, harness.entry, "flags")
        assert slot.opcode == Opcode.ALLOCA
        assert slot.allocated_type == I32
        marks = [c for c in _calls(module, harness.entry, "klee_make_symbolic")
                 if _string(module, c.operands[2]) == "flags"]
        assert len(marks) == 1
        assert marks[0].operands[1] == Const(I32, 4)
        value = _named(module, harness.entry, "flags.val")
        assert value.opcode == Opcode.LOAD and value.operands == [slot.ref]

    def test_allocas_lead_the_entry_block(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        first = next(module.instructions(harness.entry))
        assert first.opcode == Opcode.ALLOCA

    def test_call_receives_one_argument_per_parameter(self, extended, synth_for):
        module = extended()
        target = module.get_function("target")
        harness = synth_for(module).synthesize(target.id)
        call = module.instruction(harness.call)
        assert call.callee == GlobalRef("target")
        assert [module.type_of(a) for a in call.operands] == list(target.type.params)

    def test_byte_pointer_needs_no_cast(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("other").id)
        mid = _named(module, harness.entry, "buf.mid")
        assert mid.operands[0] == _named(module, harness.entry, "buf.buf").ref
        assert mid.operands[1] == Const(I64, 2000)
        [malloc] = _calls(module, harness.entry, "malloc")
        assert malloc.operands == [Const(I64, 4000)]

    def test_opaque_pointee_uses_fallback_size(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("opaque_target").id)
        [malloc] = _calls(module, harness.entry, "malloc")
        assert malloc.operands == [Const(I64, 100 * 4000)]
        mid = _named(module, harness.entry, "h.mid")
        assert mid.type == I8_PTR
        assert mid.operands[1] == Const(I64, 2000 * 100)
        call = module.instruction(harness.call)
        assert module.type_of(call.operands[0]) == PointerType(StructType("struct.handle"))

    def test_function_pointer_uses_pointer_width(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("fnptr_target").id)
        [malloc] = _calls(module, harness.entry, "malloc")
        assert malloc.operands == [Const(I64, 8 * 4000)]

    def test_buffer_geometry_is_configurable(self, extended, synth_for):
        module = extended()
        synth = synth_for(module, buffer_elements=10, buffer_offset=5)
        harness = synth.synthesize(module.get_function("target").id)
        [malloc] = _calls(module, harness.entry, "malloc")
        assert malloc.operands == [Const(I64, 240)]
        assert _named(module, harness.entry, "dev.mid").operands[1] == Const(I64, 5)

    def test_unnamed_parameter(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("unnamed_target").id)
        assert _named(module, harness.entry, "noname").opcode == Opcode.ALLOCA

    def test_unsupported_parameter_is_signature_error(self, extended, synth_for, caplog):
        module = extended()
        before = {f.name for f in module.functions}
        with caplog.at_level(logging.DEBUG, logger="symharness.harness"):
            with pytest.raises(SignatureError) as exc:
                synth_for(module).synthesize(module.get_function("double_target").id)
        assert exc.value.error.function == "double_target"
        assert "1 arguments, expected 2" in exc.value.error.message
        assert "dropping parameter 0" in caplog.text
        # partial scaffolding is gone
        assert {f.name for f in module.functions} == before
        assert not any(name.startswith(".str") for name in module.globals)


class TestStateVariables:
    def test_state_variable_reset(self, extended, synth_for):
        module = extended(state_init=5)
        harness = synth_for(module).synthesize(module.get_function("target").id)
        assert module.globals["__ai_state_lock"].initializer == Const(I32, 0)
        stores = [i for i in module.instructions(harness.entry)
                  if i.opcode == Opcode.STORE and i.operands[1] == GlobalRef("__ai_state_lock")]
        assert len(stores) == 1
        assert stores[0].volatile
        assert stores[0].operands[0] == Const(I32, 0)

    def test_store_follows_marking(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        insts = list(module.instructions(harness.entry))
        mark = next(i for i, inst in enumerate(insts)
                    if isinstance(inst.callee, GlobalRef)
                    and inst.callee.name == "klee_make_symbolic"
                    and _string(module, inst.operands[2]) == "__ai_state_lock")
        store = next(i for i, inst in enumerate(insts) if inst.opcode == Opcode.STORE)
        assert mark < store

    def test_state_is_concretely_zero_at_call(self, extended, synth_for):
        module = extended(state_init=5)
        harness = synth_for(module).synthesize(module.get_function("target").id)
        state = state_at_call(module, harness.entry, harness.call)
        assert state.is_concrete_zero("__ai_state_lock")
        assert "__ai_state_lock" in state.symbolic

    def test_declarations_get_zero_initializer(self, extended, synth_for):
        module = extended()
        synth_for(module).synthesize(module.get_function("target").id)
        assert module.globals["jiffies"].initializer == Const(I64, 0)

    def test_each_width_compared_to_its_own_zero(self, extended, synth_for):
        module = extended(extra_globals=[
            {"name": "__ai_state_flag", "type": "i8", "init": 1},
            {"name": "__ai_state_count", "type": "i64", "init": 2},
        ])
        harness = synth_for(module).synthesize(module.get_function("target").id)
        insts = list(module.instructions(harness.entry))
        ops = [i.opcode for i in insts]
        assert Opcode.TRUNC not in ops
        assert ops.count(Opcode.ADD) == 3
        held = [i for i in insts if i.opcode == Opcode.ICMP and i.predicate == "ne"]
        assert [i.operands[1] for i in held] == [Const(I32, 0), Const(I8, 0), Const(I64, 0)]
        flags = [i for i in insts if i.opcode == Opcode.ZEXT]
        assert [f.operands for f in flags] == [[h.ref] for h in held]
        assert all(f.type == I32 for f in flags)

    def test_wide_state_not_truncated(self, lock_dict, synth_for):
        # 2**32 has no bits in the low word, the check must still fail on it
        data = lock_dict()
        data["globals"][0] = {"name": "__ai_state_lock", "type": "i64", "init": 2 ** 32}
        data["functions"] = [f for f in data["functions"] if f["name"] != "lock"]
        for block in data["functions"][1]["blocks"]:
            block["instructions"] = [i for i in block["instructions"] if i.get("callee") != "@lock"]
        module = module_from_dict(data)
        harness = synth_for(module).synthesize(module.get_function("target").id)
        insts = list(module.instructions(harness.entry))
        assert all(i.opcode != Opcode.TRUNC for i in insts)
        load = next(i for i in insts if i.opcode == Opcode.LOAD and i.volatile)
        assert load.type == I64
        held = next(i for i in insts if i.opcode == Opcode.ICMP and i.predicate == "ne")
        assert held.operands == [load.ref, Const(I64, 0)]
        result = default_verifier().validate(module)
        assert result.ok, result.messages

    def test_non_integer_state_variable(self, extended, synth_for):
        module = extended(extra_globals=[{"name": "__ai_state_ptr", "type": "i8*", "init": None}])
        with pytest.raises(ConfigurationError, match="__ai_state_ptr"):
            synth_for(module).synthesize(module.get_function("target").id)
        assert module.get_function("main") is None

    def test_no_state_variables(self, lock_dict, synth_for):
        data = lock_dict()
        data["globals"] = [g for g in data["globals"] if g["name"] != "__ai_state_lock"]
        data["functions"] = [f for f in data["functions"] if f["name"] != "lock"]
        for block in data["functions"][1]["blocks"]:
            block["instructions"] = [i for i in block["instructions"] if i.get("callee") != "@lock"]
        module = module_from_dict(data)
        harness = synth_for(module).synthesize(module.get_function("target").id)
        cmp = next(i for i in module.instructions(harness.entry) if i.opcode == Opcode.ICMP)
        assert cmp.operands == [Const(I32, 0), Const(I32, 0)]


class TestExitCheck:
    def test_blocks(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        entry = module.function(harness.entry)
        assert entry.name == "main"
        assert [module.block(b).label for b in entry.blocks] == ["entry", "final", "assertBB"]

    def test_assertion_block(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        fail = module.function(harness.entry).blocks[2]
        call, last = [module.instruction(i) for i in module.block(fail).instructions]
        assert call.callee == GlobalRef("__assert_fail")
        assert _string(module, call.operands[0]) == LOCK_HELD_MESSAGE
        assert _string(module, call.operands[1]) == "n/a"
        assert call.operands[2] == Const(I32, 0)
        assert _string(module, call.operands[3]) == "main"
        assert call.loc == DebugLoc("lock.c", 42, 3)
        assert last.opcode == Opcode.UNREACHABLE

    def test_entry_branches_on_zero_sum(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        entry = module.function(harness.entry)
        insts = [module.instruction(i) for i in module.block(entry.blocks[0]).instructions]
        load, held, flag, add, cmp, br = insts[-6:]
        assert load.opcode == Opcode.LOAD and load.volatile
        assert load.operands == [GlobalRef("__ai_state_lock")]
        assert held.predicate == "ne" and held.operands == [load.ref, Const(I32, 0)]
        assert flag.opcode == Opcode.ZEXT and flag.operands == [held.ref]
        assert module.type_of(held.ref) == I1
        assert add.operands == [flag.ref, Const(I32, 0)]
        assert cmp.predicate == "eq" and cmp.operands == [InstRef(add.id), Const(I32, 0)]
        assert br.targets == entry.blocks[1:]
        [ret] = [module.instruction(i) for i in module.block(entry.blocks[1]).instructions]
        assert ret.opcode == Opcode.RET and ret.operands == [Const(I32, 0)]


class TestScaffolding:
    def test_reuses_existing_abort_function(self, extended, synth_for):
        module = extended()
        harness = synth_for(module).synthesize(module.get_function("target").id)
        created = {module.function(f).name for f in harness.created_functions}
        assert created == {"klee_make_symbolic", "malloc"}

    def test_adapts_to_declared_prototypes(self, lock_dict, synth_for):
        data = lock_dict()
        data["functions"] += [SIZE_T_MAKE_SYMBOLIC, INT_MALLOC]
        module = module_from_dict(data)
        harness = synth_for(module).synthesize(module.get_function("target").id)
        assert harness.created_functions == []
        [malloc] = _calls(module, harness.entry, "malloc")
        assert malloc.operands == [Const(I32, 24 * 4000)]
        marks = {_string(module, c.operands[2]): c
                 for c in _calls(module, harness.entry, "klee_make_symbolic")}
        assert {module.type_of(c.operands[1]) for c in marks.values()} == {I64}
        assert marks["flags"].operands[1] == Const(I64, 4)
        assert marks["__ai_state_lock"].operands[1] == Const(I64, 4)
        widened = module.instruction(marks["dev"].operands[1].id)
        assert widened.opcode == Opcode.ZEXT
        assert widened.operands == [_named(module, harness.entry, "make_symbolic_size").ref]
        result = default_verifier().validate(module)
        assert result.ok, result.messages

    def test_reused_declarations_survive_remove(self, lock_dict, synth_for):
        data = lock_dict()
        data["functions"] += [SIZE_T_MAKE_SYMBOLIC, INT_MALLOC]
        module = module_from_dict(data)
        synth = synth_for(module)
        synth.remove(synth.synthesize(module.get_function("target").id))
        assert module.get_function("klee_make_symbolic").type == FunctionType(
            VOID, (I8_PTR, I64, I8_PTR))
        assert module.get_function("malloc") is not None

    def test_other_prototype_called_through_cast(self, lock_dict, synth_for, caplog):
        data = lock_dict(state_init=5)
        data["functions"].append({"name": "klee_make_symbolic", "type": "i32 (i8*, i64)"})
        module = module_from_dict(data)
        with caplog.at_level(logging.WARNING, logger="symharness.harness"):
            harness = synth_for(module).synthesize(module.get_function("target").id)
        assert "calling it as 'void (i8*, i32, i8*)'" in caplog.text
        calls = [i for i in module.instructions(harness.entry)
                 if i.opcode == Opcode.CALL and isinstance(i.callee, InstRef)]
        assert len(calls) == 3
        for call in calls:
            cast = module.instruction(call.callee.id)
            assert cast.opcode == Opcode.BITCAST
            assert cast.operands == [GlobalRef("klee_make_symbolic")]
        state = state_at_call(module, harness.entry, harness.call)
        assert state.is_concrete_zero("__ai_state_lock")
        assert "__ai_state_lock" in state.symbolic
        result = default_verifier().validate(module)
        assert result.ok, result.messages

    def test_remove_restores_symbols(self, extended, synth_for):
        module = extended()
        functions = {f.name for f in module.functions}
        globals_ = set(module.globals)
        synth = synth_for(module)
        harness = synth.synthesize(module.get_function("target").id)
        synth.remove(harness)
        assert {f.name for f in module.functions} == functions
        assert set(module.globals) == globals_
        assert harness.entry is None

    def test_name_clash_gets_unique_entry(self, extended, synth_for, caplog):
        module = extended()
        module.add_function("main", module.get_function("lock").type)
        with caplog.at_level(logging.WARNING, logger="symharness.harness"):
            harness = synth_for(module).synthesize(module.get_function("target").id)
        assert module.function(harness.entry).name == "main1"
        assert "main1" in caplog.text

    @pytest.mark.parametrize("name", ["target", "other", "opaque_target", "fnptr_target",
                                      "unnamed_target"])
    def test_harness_verifies(self, extended, synth_for, name):
        module = extended()
        synth_for(module).synthesize(module.get_function(name).id)
        result = default_verifier().validate(module)
        assert result.ok, result.messages
