"""
LLM Providers
=============
Builds the LangChain chat model and configures DSPy from environment variables.

Provider auto-detection priority: Groq → Azure OpenAI → OpenAI
Override with LLM_PROVIDER=groq|azure|openai to force a specific provider.

The chat model writes grounded customer replies; DSPy runs the structured
sub-tasks (classification, order-number extraction, outbound safety check).
Both point at the same provider, selected here and nowhere else.
"""
import logging
import os

import dspy

logger = logging.getLogger(__name__)

PROVIDERS = ("groq", "azure", "openai")


def detect_provider() -> str:
    """
    Return which LLM provider to use.

    LLM_PROVIDER wins when it names a known provider; otherwise the first
    API key found in the environment decides.
    """
    forced = os.getenv("LLM_PROVIDER", "").lower()
    if forced in PROVIDERS:
        return forced
    if os.getenv("GROQ_API_KEY"):
        return "groq"
    if os.getenv("AZURE_OPENAI_API_KEY"):
        return "azure"
    return "openai"


def build_llm():
    """
    Return a LangChain chat model for the detected provider.

    Groq   → ChatGroq (llama-3.3-70b-versatile by default)
    Azure  → AzureChatOpenAI (no temperature; o-series deployments reject it)
    OpenAI → ChatOpenAI (gpt-4o-mini by default)

    Customer replies are drafted at a low non-zero temperature so they do not
    read identically across emails.
    """
    provider = detect_provider()
    logger.info("[LLM] Provider: %s", provider)

    if provider == "groq":
        from langchain_groq import ChatGroq
        return ChatGroq(
            model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
            api_key=os.getenv("GROQ_API_KEY"),
            temperature=0.3,
        )

    if provider == "azure":
        from langchain_openai import AzureChatOpenAI
        return AzureChatOpenAI(
            azure_endpoint=os.getenv("AZURE_OPENAI_ENDPOINT"),
            azure_deployment=os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"),
            api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
            api_key=os.getenv("AZURE_OPENAI_API_KEY"),
        )

    from langchain_openai import ChatOpenAI
    return ChatOpenAI(
        model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        api_key=os.getenv("OPENAI_API_KEY"),
        temperature=0.3,
    )


def dspy_model_name(provider: str) -> str:
    if provider == "groq":
        return "groq/" + os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")
    if provider == "azure":
        return "azure/" + os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o")
    return "openai/" + os.getenv("OPENAI_MODEL", "gpt-4o-mini")


def configure_dspy() -> None:
    """Point DSPy at the same provider as the chat model."""
    provider = detect_provider()
    model    = dspy_model_name(provider)

    if provider == "groq":
        lm = dspy.LM(model, api_key=os.getenv("GROQ_API_KEY"))
    elif provider == "azure":
        lm = dspy.LM(
            model,
            api_base=os.getenv("AZURE_OPENAI_ENDPOINT"),
            api_key=os.getenv("AZURE_OPENAI_API_KEY"),
            api_version=os.getenv("AZURE_OPENAI_API_VERSION", "2024-12-01-preview"),
        )
    else:
        lm = dspy.LM(model, api_key=os.getenv("OPENAI_API_KEY"))

    dspy.configure(lm=lm)
    logger.info("[LLM] DSPy configured with %s", model)
