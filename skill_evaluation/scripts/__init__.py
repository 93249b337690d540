"""
Executable scripts for the skill evaluation component.

Scripts:
    run_skill_evaluation.py: Skill metrics and best-method raster
"""
