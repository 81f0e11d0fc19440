import pytest

from context_allocator.prompts import DefaultPromptModule, PromptModule


def test_prompt_module_is_abstract():
    with pytest.raises(TypeError):
        PromptModule()

    class SystemOnly(PromptModule):
        def build_system_prompt(self, locale, need_prepare_context):
            return "system"

    with pytest.raises(TypeError):
        SystemOnly()


def test_system_prompt_depends_on_context():
    module = DefaultPromptModule()

    assert "[citation:N]" in module.build_system_prompt("de", need_prepare_context=True)
    assert "citation" not in module.build_system_prompt("de", need_prepare_context=False)
    assert module.build_system_prompt("de", need_prepare_context=False).endswith("Reply in de")


def test_context_prompt_left_out_when_empty():
    module = DefaultPromptModule()

    assert module.build_context_user_prompt("", need_prepare_context=True) == ""
    assert module.build_context_user_prompt("ctx", need_prepare_context=False) == ""
    assert "<context>\nctx\n</context>" in module.build_context_user_prompt("ctx", need_prepare_context=True)


def test_user_prompt_lists_other_phrasings():
    module = DefaultPromptModule()

    prompt = module.build_user_prompt(
        original_query="tesla news?",
        optimized_query="tesla news 2024",
        rewritten_queries=["tesla news 2024", "tesla announcements"],
        locale="en",
    )

    assert prompt.startswith("Original question: tesla news?\nOptimized question: tesla news 2024")
    assert prompt.endswith("The question was also searched as:\n- tesla announcements")
