"""
Database Schema Reference
=========================

This file provides a quick reference for all database tables and columns.
For actual SQLAlchemy models, see: studygen/db/models.py

"""

# ============================================================================
# API_KEYS - API keys of authenticated users
# ============================================================================
#
# | Column                | Type              | Constraints                    |
# |-----------------------|-------------------|--------------------------------|
# | id                    | UUID              | PRIMARY KEY                    |
# | key_hash              | VARCHAR(255)      | NOT NULL, UNIQUE, INDEX        |
# | key_prefix            | VARCHAR(12)       | NOT NULL, INDEX                |
# | name                  | VARCHAR(100)      | NOT NULL                       |
# | user_id               | VARCHAR(100)      | NOT NULL, INDEX                |
# | plan                  | VARCHAR(20)       | NOT NULL, DEFAULT 'free'       |
# | rate_limit_per_minute | INTEGER           | NOT NULL, DEFAULT 30           |
# | rate_limit_per_hour   | INTEGER           | NOT NULL, DEFAULT 300          |
# | is_active             | BOOLEAN           | NOT NULL, DEFAULT TRUE         |
# | created_at            | TIMESTAMP(TZ)     | NOT NULL, DEFAULT now()        |
# | expires_at            | TIMESTAMP(TZ)     | NULLABLE                       |
#
# Plans: 'free' | 'standard' | 'plus' | 'premium'


# ============================================================================
# STUDY_GUIDES - Shared generated content, one row per fingerprint
# ============================================================================
#
# | Column                  | Type          | Constraints                      |
# |-------------------------|---------------|----------------------------------|
# | id                      | UUID          | PRIMARY KEY                      |
# | input_type              | VARCHAR(20)   | NOT NULL                         |
# | input_value             | TEXT          | NULLABLE (NULL for anonymous)    |
# | input_value_hash        | VARCHAR(64)   | NOT NULL, INDEX                  |
# | language                | VARCHAR(5)    | NOT NULL, DEFAULT 'en'           |
# | study_mode              | VARCHAR(20)   | NOT NULL, DEFAULT 'standard'     |
# | summary                 | TEXT          | NOT NULL                         |
# | interpretation          | TEXT          | NOT NULL                         |
# | context                 | TEXT          | NOT NULL                         |
# | related_verses          | JSON          | NOT NULL                         |
# | reflection_questions    | JSON          | NOT NULL                         |
# | prayer_points           | JSON          | NOT NULL                         |
# | passage                 | TEXT          | NULLABLE                         |
# | interpretation_insights | JSON          | NULLABLE                         |
# | summary_insights        | JSON          | NULLABLE                         |
# | reflection_answers      | JSON          | NULLABLE                         |
# | context_question        | TEXT          | NULLABLE                         |
# | summary_question        | TEXT          | NULLABLE                         |
# | related_verses_question | TEXT          | NULLABLE                         |
# | reflection_question     | TEXT          | NULLABLE                         |
# | prayer_question         | TEXT          | NULLABLE                         |
# | extended_content        | JSON          | NULLABLE (enrichment sections)   |
# | creator_user_id         | VARCHAR(100)  | NULLABLE, INDEX                  |
# | creator_session_id      | VARCHAR(100)  | NULLABLE                         |
# | created_at              | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()          |
# | updated_at              | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()          |
#
# Unique: (input_type, input_value_hash, language, study_mode)
# input_value_hash = sha256("{type}:{language}:{mode}:{normalized input}")
# Both creator columns NULL = legacy row, free for every caller.


# ============================================================================
# USER_STUDY_GUIDES - Which callers hold which study guides
# ============================================================================
#
# | Column         | Type          | Constraints                          |
# |----------------|---------------|--------------------------------------|
# | id             | UUID          | PRIMARY KEY                          |
# | study_guide_id | UUID          | NOT NULL, FK(study_guides.id), INDEX |
# | caller_type    | VARCHAR(20)   | NOT NULL                             |
# | caller_id      | VARCHAR(100)  | NOT NULL, INDEX                      |
# | is_saved       | BOOLEAN       | NOT NULL, DEFAULT FALSE              |
# | created_at     | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()              |
# | updated_at     | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()              |
#
# Unique: (study_guide_id, caller_type, caller_id)
# caller_type: 'authenticated' | 'anonymous'
# Deleting a row removes the guide from the caller's list only.


# ============================================================================
# STUDY_GUIDES_IN_PROGRESS - In-flight generation registry
# ============================================================================
#
# | Column            | Type          | Constraints                      |
# |-------------------|---------------|----------------------------------|
# | id                | UUID          | PRIMARY KEY                      |
# | input_type        | VARCHAR(20)   | NOT NULL                         |
# | input_value_hash  | VARCHAR(64)   | NOT NULL                         |
# | language          | VARCHAR(5)    | NOT NULL                         |
# | study_mode        | VARCHAR(20)   | NOT NULL                         |
# | caller_type       | VARCHAR(20)   | NULLABLE                         |
# | caller_id         | VARCHAR(100)  | NULLABLE                         |
# | status            | VARCHAR(20)   | NOT NULL, DEFAULT 'running'      |
# | sections          | JSON          | NOT NULL (checkpointed sections) |
# | started_at        | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()          |
# | last_heartbeat_at | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()          |
# | completed_at      | TIMESTAMP(TZ) | NULLABLE                         |
# | error_code        | VARCHAR(50)   | NULLABLE                         |
# | error_message     | TEXT          | NULLABLE                         |
#
# Unique: (input_type, input_value_hash, language, study_mode)
# status: 'running' | 'completed' | 'failed'
# A running row with no heartbeat for 5 minutes is stale and may be taken over.


# ============================================================================
# TOKEN_BALANCES - Daily and purchased tokens per user or session
# ============================================================================
#
# | Column               | Type          | Constraints                  |
# |----------------------|---------------|------------------------------|
# | identifier           | VARCHAR(100)  | PRIMARY KEY                  |
# | identifier_type      | VARCHAR(20)   | PRIMARY KEY                  |
# | plan                 | VARCHAR(20)   | NOT NULL, DEFAULT 'free'     |
# | daily_tokens         | INTEGER       | NOT NULL                     |
# | purchased_tokens     | INTEGER       | NOT NULL                     |
# | daily_limit          | INTEGER       | NOT NULL                     |
# | total_consumed_today | INTEGER       | NOT NULL                     |
# | last_reset           | DATE          | NOT NULL                     |
# | created_at           | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()      |
# | updated_at           | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()      |
#
# Daily tokens are spent before purchased tokens and refill on the first
# request of a new UTC day.


# ============================================================================
# USAGE_EVENTS - Usage and security log
# ============================================================================
#
# | Column            | Type          | Constraints              |
# |-------------------|---------------|--------------------------|
# | id                | INTEGER       | PRIMARY KEY, AUTOINCR    |
# | event_type        | VARCHAR(50)   | NOT NULL, INDEX          |
# | caller_type       | VARCHAR(20)   | NULLABLE                 |
# | caller_id         | VARCHAR(100)  | NULLABLE, INDEX          |
# | study_guide_id    | VARCHAR(36)   | NULLABLE                 |
# | tokens_consumed   | INTEGER       | NOT NULL, DEFAULT 0      |
# | llm_provider      | VARCHAR(20)   | NULLABLE                 |
# | llm_model         | VARCHAR(100)  | NULLABLE                 |
# | llm_input_tokens  | INTEGER       | NOT NULL, DEFAULT 0      |
# | llm_output_tokens | INTEGER       | NOT NULL, DEFAULT 0      |
# | llm_cost_usd      | FLOAT         | NOT NULL, DEFAULT 0      |
# | details           | JSON          | NULLABLE                 |
# | created_at        | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()  |
#
# Event Examples:
#   'study_guide_generated', 'study_guide_cache_hit', 'study_guide_polled'
#   'security_violation'


# ============================================================================
# TOKEN COSTS
# ============================================================================
#
# cost = ceil(language base * mode multiplier)
#
# | Mode     | Multiplier | en | hi | ml | Passes (en / hi, ml) |
# |----------|------------|----|----|----|----------------------|
# | quick    | 0.5        | 5  | 8  | 8  | 1 / 1                |
# | standard | 1.0        | 10 | 15 | 15 | 1 / 2                |
# | deep     | 1.5        | 15 | 23 | 23 | 1 / 2                |
# | lectio   | 1.2        | 12 | 18 | 18 | 1 / 2                |
# | sermon   | 2.0        | 20 | 30 | 30 | 4 / 4                |


# ============================================================================
# ER DIAGRAM (Text)
# ============================================================================
#
#  ┌────────────────────┐          ┌────────────────────┐
#  │    study_guides    │          │ study_guides_in_   │
#  ├────────────────────┤          │      progress      │
#  │ id (PK)            │───┐      ├────────────────────┤
#  │ fingerprint (UQ)   │   │      │ id (PK)            │
#  │ sections           │   │      │ fingerprint (UQ)   │
#  │ creator ids        │   │      │ status, sections   │
#  │ timestamps         │   │      │ heartbeat          │
#  └────────────────────┘   │      └────────────────────┘
#                           │ 1:N
#  ┌────────────────────┐   │      ┌────────────────────┐
#  │ user_study_guides  │◄──┘      │   token_balances   │
#  ├────────────────────┤          ├────────────────────┤
#  │ id (PK)            │          │ identifier (PK)    │
#  │ study_guide_id (FK)│          │ identifier_type(PK)│
#  │ caller_type/id     │          │ daily / purchased  │
#  │ is_saved           │          │ last_reset         │
#  └────────────────────┘          └────────────────────┘
#
#  ┌────────────────────┐          ┌────────────────────┐
#  │      api_keys      │          │    usage_events    │
#  ├────────────────────┤          ├────────────────────┤
#  │ id (PK)            │          │ id (PK)            │
#  │ key_hash, prefix   │          │ event_type         │
#  │ user_id, plan      │          │ caller, guide      │
#  │ rate_limits        │          │ llm usage, details │
#  └────────────────────┘          └────────────────────┘
