from chat_engine.prompting.intent import ConversationSignals, Intent, IntentClassifier, IntentResult
from chat_engine.prompting.composer import ComposedPrompt, PromptComposer

__all__ = [
    "ComposedPrompt",
    "ConversationSignals",
    "Intent",
    "IntentClassifier",
    "IntentResult",
    "PromptComposer",
]
