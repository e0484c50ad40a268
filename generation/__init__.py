"""
Model-facing generation code
generation/

  - llm_client              - streamed OpenAI call with deadline (GenerationInvoker)
  - prompts                 - prompt templates for pages, practice, verification, solving
  - json_output             - JSON extraction/repair for model replies
  - practice_generator      - corpus samples → practice MCQs
  - verification_generator  - deliverable + sample exams → oral questions
  - solver                  - worked answer for one corpus question (cached)
"""
