"""conductor - orchestration engine for a four-agent code pipeline.

Runs move through refine -> build -> verify -> gate, pausing on CRP/VCR human
checkpoints and surviving crashes through interrupted-run recovery. Missions
group many runs into ordered phases of tasks.
"""

__version__ = "0.1.0"
