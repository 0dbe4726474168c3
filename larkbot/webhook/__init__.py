"""HTTP surface: Lark event and card callbacks, job status API, drain trigger."""
