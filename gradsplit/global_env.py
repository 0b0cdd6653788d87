"""All global configurations for this project."""
import os


class GlobalConfig:
    """The global configuration of gradsplit."""

    def __init__(self):
        ########## Options of the dataflow graph ##########
        # The description written for backward nodes that carry no
        # description of their own. Also used to recognize backward nodes
        # when loading a serialized model.
        self.backward_pass_description = "Backward pass"
        # The suffix that names the gradient of a tensor.
        self.gradient_suffix = "_grad"
        # The domain of the custom ops inserted by the builder and the
        # recompute pass.
        self.custom_op_domain = "com.microsoft"

        ########## Options of recompute ##########
        # The suffix of recomputed nodes and tensors.
        self.recompute_suffix = "_recompute"
        # The scheduling priority of recomputed nodes. A negative value
        # defers them until the backward consumers are ready.
        self.recompute_priority = -10

        ########## Options of the graph builder ##########
        # The number of pass levels run before and after differentiation.
        self.max_transformer_level = 2
        # If set, the gradient graph produced by build() is saved to this
        # path for debugging.
        self.dump_gradient_model_path = os.environ.get(
            "GRADSPLIT_DUMP_GRADIENT_MODEL", None)
        # Whether to show a progress bar when building several shapes.
        self.show_progress = os.environ.get("GRADSPLIT_SHOW_PROGRESS",
                                            "").lower() in ["true", "1"]

        ########## Options of logging ##########
        self.print_build_time = os.environ.get("GRADSPLIT_PRINT_BUILD_TIME",
                                               "").lower() in ["true", "1"]
        self.print_recompute_stats = False


global_config = GlobalConfig()
