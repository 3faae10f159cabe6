"""Tests for the workflow step runner."""

import pytest

from agentc2.config import WorkflowConfig
from agentc2.tools import ToolRegistry
from agentc2.workflows import ResumeInput, WorkflowMeta, WorkflowRuntime
from tests.conftest import ScriptedAgent, ScriptedResolver


def _runtime(agents=None, tools=None, lookup=None, **config):
    return WorkflowRuntime(
        ScriptedResolver(agents or {}),
        tools or ToolRegistry(),
        lookup,
        WorkflowConfig(**config),
    )


class TestAgentSteps:
    @pytest.mark.asyncio
    async def test_text_output(self):
        agent = ScriptedAgent(["Hello Ada"])
        runtime = _runtime({"greeter": agent})
        definition = {
            "steps": [
                {
                    "id": "greet",
                    "type": "agent",
                    "config": {"agentSlug": "greeter", "promptTemplate": "Greet {{ input.name }}"},
                }
            ]
        }

        result = await runtime.execute(definition, {"name": "Ada"})

        assert result.status == "success"
        assert agent.prompts == ["Greet Ada"]
        assert result.output == {
            "text": "Hello Ada",
            "result": "Hello Ada",
            "tool_calls": [],
            "_agent_slug": "greeter",
        }
        assert result.steps[0].status == "completed"
        assert result.steps[0].step_type == "agent"

    @pytest.mark.asyncio
    async def test_json_output_validated(self):
        agent = ScriptedAgent(['```json\n{"priority": "high"}\n```'])
        runtime = _runtime({"triage": agent})
        definition = {
            "steps": [
                {
                    "id": "classify",
                    "type": "agent",
                    "config": {
                        "agent_slug": "triage",
                        "prompt_template": "Classify",
                        "output_format": "json",
                        "output_schema": {
                            "type": "object",
                            "properties": {"priority": {"enum": ["low", "high"]}},
                            "required": ["priority"],
                        },
                    },
                },
                {
                    "id": "route",
                    "type": "branch",
                    "config": {
                        "branches": [
                            {
                                "id": "urgent",
                                "condition": "steps.classify.priority === 'high'",
                                "steps": [
                                    {
                                        "id": "page",
                                        "type": "transform",
                                        "inputMapping": {"paged": True},
                                    }
                                ],
                            }
                        ]
                    },
                },
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "success"
        assert result.steps[0].output == {"priority": "high"}
        assert result.output["branch_id"] == "urgent"
        assert result.output["result"] == {"paged": True}

    @pytest.mark.asyncio
    async def test_invalid_json_fails_step(self):
        runtime = _runtime({"triage": ScriptedAgent(["no json here"])})
        definition = {
            "steps": [
                {
                    "id": "classify",
                    "type": "agent",
                    "config": {"agentSlug": "triage", "outputFormat": "json"},
                },
                {"id": "after", "type": "transform"},
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "failed"
        assert "failed to produce valid JSON output" in result.error
        assert [s.step_id for s in result.steps] == ["classify"]
        assert result.steps[0].status == "failed"

    @pytest.mark.asyncio
    async def test_missing_agent_slug(self):
        runtime = _runtime()
        result = await runtime.execute({"steps": [{"id": "a", "type": "agent"}]})
        assert result.status == "failed"
        assert result.error == 'Agent step "a" missing agent_slug'


class TestToolSteps:
    @pytest.mark.asyncio
    async def test_tool_receives_resolved_input_and_metadata(self):
        seen = {}

        async def lookup(args):
            seen.update(args)
            return {"content": [{"type": "text", "text": '{"rows": [1, 2]}'}]}

        tools = ToolRegistry()
        tools.register("db.lookup", lookup)
        runtime = _runtime(tools=tools)
        definition = {
            "steps": [
                {
                    "id": "fetch",
                    "type": "tool",
                    "config": {"toolId": "db.lookup"},
                    "inputMapping": {"customer": "{{ input.customer_id }}"},
                }
            ]
        }

        result = await runtime.execute(
            definition,
            {"customer_id": "c-9"},
            request_context={"organization_id": "org-1"},
            workflow_meta=WorkflowMeta(run_id="run-1", workflow_slug="billing"),
        )

        assert result.status == "success"
        assert result.output == {"rows": [1, 2]}
        assert seen == {
            "customer": "c-9",
            "organization_id": "org-1",
            "workflow_slug": "billing",
            "run_id": "run-1",
            "step_id": "fetch",
        }

    @pytest.mark.asyncio
    async def test_org_scoped_tool(self):
        tools = ToolRegistry()
        tools.register("echo", lambda args: "global")
        tools.register("echo", lambda args: "scoped", organization_id="org-1")
        runtime = _runtime(tools=tools)
        definition = {"steps": [{"id": "t", "type": "tool", "config": {"toolId": "echo"}}]}

        scoped = await runtime.execute(definition, {}, request_context={"organization_id": "org-1"})
        other = await runtime.execute(definition, {}, request_context={"organization_id": "org-2"})

        assert scoped.output == "scoped"
        assert other.output == "global"

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        runtime = _runtime()
        definition = {"steps": [{"id": "t", "type": "tool", "config": {"toolId": "nope"}}]}
        result = await runtime.execute(definition, {})
        assert result.status == "failed"
        assert result.error == 'Tool "nope" not found'


class TestControlFlow:
    @pytest.mark.asyncio
    async def test_branch_default(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "route",
                    "type": "branch",
                    "config": {
                        "branches": [{"id": "big", "condition": "input.amount > 100", "steps": []}],
                        "defaultBranch": [
                            {"id": "small", "type": "transform", "inputMapping": {"ok": True}}
                        ],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {"amount": 5})

        assert result.status == "success"
        assert result.output["branch_id"] is None
        assert result.output["result"] == {"ok": True}
        assert result.output["_evaluation_results"] == [
            {"branch_id": "big", "condition": "input.amount > 100", "result": False}
        ]

    @pytest.mark.asyncio
    async def test_branch_condition_error(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "route",
                    "type": "branch",
                    "config": {"branches": [{"id": "bad", "condition": "input.amount >", "steps": []}]},
                }
            ]
        }

        result = await runtime.execute(definition, {"amount": 5})

        assert result.status == "failed"
        assert result.error.startswith("[Branch: route] Branch condition evaluation failed.")
        assert "Branch ID: bad" in result.error

    @pytest.mark.asyncio
    async def test_parallel_outputs_in_branch_order(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "fan",
                    "type": "parallel",
                    "config": {
                        "branches": [
                            {"steps": [{"id": "a", "type": "transform", "inputMapping": {"v": 1}}]},
                            {"steps": [{"id": "b", "type": "transform", "inputMapping": {"v": 2}}]},
                        ]
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.output == [{"v": 1}, {"v": 2}]
        assert [s.step_id for s in result.steps] == ["a", "b", "fan"]

    @pytest.mark.asyncio
    async def test_foreach_keeps_order_with_concurrency(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "each",
                    "type": "foreach",
                    "config": {
                        "collectionPath": "input.numbers",
                        "itemVar": "n",
                        "concurrency": 2,
                        "steps": [
                            {
                                "id": "double",
                                "type": "transform",
                                "inputMapping": {"value": "{{ variables.n * 2 }}"},
                            }
                        ],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {"numbers": [1, 2, 3]})

        assert result.status == "success"
        assert result.output == [{"value": 2}, {"value": 4}, {"value": 6}]
        iterations = [s.iteration_index for s in result.steps if s.step_id == "double"]
        assert iterations == [0, 1, 2]
        assert result.steps[-1].iteration_index is None

    @pytest.mark.asyncio
    async def test_foreach_requires_array(self):
        runtime = _runtime()
        definition = {
            "steps": [{"id": "each", "type": "foreach", "config": {"collectionPath": "input.x"}}]
        }
        result = await runtime.execute(definition, {"x": "nope"})
        assert result.status == "failed"
        assert result.error == 'Foreach step "each" collection is not an array'

    @pytest.mark.asyncio
    async def test_dowhile_counts_iterations(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "loop",
                    "type": "dowhile",
                    "config": {
                        "conditionExpression": 'steps["count"]["n"] < 3',
                        "steps": [
                            {
                                "id": "count",
                                "type": "transform",
                                "inputMapping": {"n": '{{ variables["_dowhile_iteration"] + 1 }}'},
                            }
                        ],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "success"
        assert result.output == {"n": 3, "_total_iterations": 3}

    @pytest.mark.asyncio
    async def test_dowhile_stops_at_max_iterations(self):
        runtime = _runtime(default_max_iterations=4)
        definition = {
            "steps": [
                {
                    "id": "loop",
                    "type": "dowhile",
                    "config": {
                        "conditionExpression": "true",
                        "maxIterations": 2,
                        "steps": [{"id": "noop", "type": "transform", "inputMapping": {"x": 1}}],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.output["_total_iterations"] == 2

    @pytest.mark.asyncio
    async def test_delay_and_unknown_types(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {"id": "wait", "type": "delay", "config": {"delayMs": 1}},
                {"id": "mystery", "type": "custom-thing", "inputMapping": {"k": "{{ input.k }}"}},
            ]
        }

        result = await runtime.execute(definition, {"k": "v"})

        assert result.steps[0].output == {"delayed_ms": 1}
        assert result.output == {"k": "v"}

    @pytest.mark.asyncio
    async def test_branch_with_optional_chaining(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {"id": "classify", "type": "transform", "inputMapping": {"classification": "{{ input.kind }}"}},
                {
                    "id": "route",
                    "type": "branch",
                    "config": {
                        "branches": [
                            {
                                "id": "user-error",
                                "condition": "steps.classify?.classification === 'user_error'",
                                "steps": [{"id": "reply", "type": "transform", "inputMapping": {"close": True}}],
                            }
                        ]
                    },
                },
            ]
        }

        result = await runtime.execute(definition, {"kind": "user_error"})

        assert result.status == "success"
        assert result.output["branch_id"] == "user-error"
        assert result.output["result"] == {"close": True}


def _tools_failing_on(value):
    registry = ToolRegistry()

    def check(args):
        if args.get("n") == value:
            raise ValueError(f"bad item {value}")
        return {"checked": args.get("n")}

    registry.register("check", check)
    return registry


ASK = {"id": "ask", "type": "human", "config": {"prompt": "Continue?"}}


class TestAggregation:
    @pytest.mark.asyncio
    async def test_parallel_failure_wins_over_suspension(self):
        runtime = _runtime(tools=_tools_failing_on(1))
        definition = {
            "steps": [
                {
                    "id": "fan",
                    "type": "parallel",
                    "config": {
                        "branches": [
                            {
                                "steps": [
                                    {"id": "explode", "type": "tool", "config": {"toolId": "check", "parameters": {"n": 1}}}
                                ]
                            },
                            {"steps": [ASK]},
                        ]
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "failed"
        assert result.error == "bad item 1"
        assert [(s.step_id, s.status) for s in result.steps] == [
            ("explode", "failed"),
            ("ask", "suspended"),
            ("fan", "failed"),
        ]

    @pytest.mark.asyncio
    async def test_parallel_suspends_when_a_branch_waits(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "fan",
                    "type": "parallel",
                    "config": {
                        "branches": [
                            {"steps": [{"id": "a", "type": "transform", "inputMapping": {"v": 1}}]},
                            {"steps": [ASK]},
                        ]
                    },
                },
                {"id": "after", "type": "transform", "inputMapping": {"x": 1}},
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "suspended"
        assert result.suspended.step_id == "ask"
        assert result.steps[-1].step_id == "fan"
        assert result.steps[-1].status == "suspended"
        assert "after" not in [s.step_id for s in result.steps]

    @pytest.mark.asyncio
    async def test_foreach_fails_when_one_item_fails(self):
        runtime = _runtime(tools=_tools_failing_on(2))
        definition = {
            "steps": [
                {
                    "id": "each",
                    "type": "foreach",
                    "config": {
                        "collectionPath": "input.numbers",
                        "itemVar": "n",
                        "steps": [
                            {
                                "id": "check",
                                "type": "tool",
                                "config": {"toolId": "check"},
                                "inputMapping": {"n": "{{ variables.n }}"},
                            }
                        ],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {"numbers": [1, 2, 3]})

        assert result.status == "failed"
        assert result.error == "bad item 2"
        checks = [(s.iteration_index, s.status) for s in result.steps if s.step_id == "check"]
        assert checks == [(0, "completed"), (1, "failed"), (2, "completed")]

    @pytest.mark.asyncio
    async def test_foreach_suspends_on_human_step(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "each",
                    "type": "foreach",
                    "config": {"collectionPath": "input.numbers", "steps": [ASK]},
                }
            ]
        }

        result = await runtime.execute(definition, {"numbers": [1, 2]})

        assert result.status == "suspended"
        assert result.suspended.step_id == "ask"
        assert result.steps[-1].status == "suspended"

    @pytest.mark.asyncio
    async def test_dowhile_suspends_mid_loop(self):
        runtime = _runtime()
        definition = {
            "steps": [
                {
                    "id": "loop",
                    "type": "dowhile",
                    "config": {
                        "conditionExpression": "true",
                        "steps": [{"id": "draft", "type": "transform", "inputMapping": {"v": 1}}, ASK],
                    },
                },
                {"id": "after", "type": "transform", "inputMapping": {"x": 1}},
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "suspended"
        assert result.suspended.step_id == "ask"
        assert [(s.step_id, s.status) for s in result.steps] == [
            ("draft", "completed"),
            ("ask", "suspended"),
            ("loop", "suspended"),
        ]

    @pytest.mark.asyncio
    async def test_dowhile_failure_stops_loop(self):
        runtime = _runtime(tools=_tools_failing_on(3))
        definition = {
            "steps": [
                {
                    "id": "loop",
                    "type": "dowhile",
                    "config": {
                        "conditionExpression": "true",
                        "maxIterations": 10,
                        "steps": [
                            {
                                "id": "check",
                                "type": "tool",
                                "config": {"toolId": "check"},
                                "inputMapping": {"n": '{{ variables["_dowhile_iteration"] + 1 }}'},
                            }
                        ],
                    },
                }
            ]
        }

        result = await runtime.execute(definition, {})

        assert result.status == "failed"
        assert result.error == "bad item 3"
        assert [s.status for s in result.steps if s.step_id == "check"] == [
            "completed",
            "completed",
            "failed",
        ]
        assert result.steps[-1].step_id == "loop"


class TestHumanSteps:
    definition = {
        "steps": [
            {"id": "prep", "type": "transform", "inputMapping": {"draft": "{{ input.text }}"}},
            {
                "id": "approve",
                "type": "human",
                "config": {
                    "prompt": "Approve the draft?",
                    "formSchema": {
                        "type": "object",
                        "properties": {"approved": {"type": "boolean"}},
                        "required": ["approved"],
                    },
                },
            },
            {"id": "publish", "type": "transform", "inputMapping": {"ok": "{{ steps.approve.approved }}"}},
        ]
    }

    @pytest.mark.asyncio
    async def test_suspend_then_resume(self):
        runtime = _runtime()

        first = await runtime.execute(self.definition, {"text": "hi"})

        assert first.status == "suspended"
        assert first.suspended.step_id == "approve"
        assert first.suspended.data["prompt"] == "Approve the draft?"
        assert [s.status for s in first.steps] == ["completed", "suspended"]

        second = await runtime.execute(
            self.definition,
            {"text": "hi"},
            resume=ResumeInput(step_id="approve", data={"approved": True}),
            existing_steps={"prep": first.steps[0].output},
        )

        assert second.status == "success"
        assert second.output == {"ok": True}
        assert [s.step_id for s in second.steps] == ["approve", "publish"]

    @pytest.mark.asyncio
    async def test_resume_data_validated(self):
        runtime = _runtime()
        result = await runtime.execute(
            self.definition,
            {"text": "hi"},
            resume={"step_id": "approve", "data": {"approved": "yes"}},
            existing_steps={"prep": {"draft": "hi"}},
        )
        assert result.status == "failed"
        assert 'Human step "approve" response is invalid' in result.error


class TestNestedWorkflows:
    @pytest.mark.asyncio
    async def test_nested_workflow(self):
        child = {
            "steps": [
                {"id": "inner", "type": "transform", "inputMapping": {"got": "{{ input.value }}"}}
            ]
        }
        runtime = _runtime(lookup=lambda ref: child if ref == "child" else None)
        definition = {
            "steps": [
                {
                    "id": "call",
                    "type": "workflow",
                    "config": {"workflowId": "child", "input": {"value": "{{ input.v }}"}},
                }
            ]
        }

        result = await runtime.execute(definition, {"v": 7})

        assert result.status == "success"
        assert result.output == {"got": 7}
        assert [s.step_id for s in result.steps] == ["inner", "call"]

    @pytest.mark.asyncio
    async def test_async_lookup(self):
        async def lookup(ref):
            return {"steps": [{"id": "x", "type": "transform", "inputMapping": {"a": 1}}]}

        runtime = _runtime(lookup=lookup)
        definition = {"steps": [{"id": "call", "type": "workflow", "config": {"workflowId": "any"}}]}
        result = await runtime.execute(definition, {})
        assert result.output == {"a": 1}

    @pytest.mark.asyncio
    async def test_recursion_hits_depth_limit(self):
        recursive = {"steps": [{"id": "again", "type": "workflow", "config": {"workflowId": "self"}}]}
        runtime = _runtime(lookup=lambda ref: recursive, max_nesting_depth=2)

        result = await runtime.execute(recursive, {})

        assert result.status == "failed"
        assert result.error == "Maximum workflow nesting depth exceeded"


class TestStepEvents:
    @pytest.mark.asyncio
    async def test_callback_sees_every_record(self):
        seen = []
        runtime = _runtime()
        definition = {
            "steps": [
                {"id": "a", "type": "transform", "inputMapping": {"x": 1}},
                {"id": "b", "type": "transform", "inputMapping": {"y": "{{ steps.a.x }}"}},
            ]
        }

        result = await runtime.execute(definition, {}, on_step_event=seen.append)

        assert [r.step_id for r in seen] == ["a", "b"]
        assert result.output == {"y": 1}
