"""
Listing Preparation Pipeline

Job-based state machine:
1. Analyzing - vision analysis of every photo
2. StrategyBuilt - per-photo tool plan, hero and twilight candidate
3. Processing - routed tool execution, checkpointed per photo
4. Finalizing - listing status from the failure ratio
"""
