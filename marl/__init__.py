"""marl: an interactive command shell for language-model sessions."""
