"""
Services Module

Core services of the prompt orchestration pipeline: secret storage, prompt
catalog, response cache, safety filter, interaction ledger, session
management, chat orchestration and fine-tune dataset curation.
"""
